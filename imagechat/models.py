from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

ROLES = ("user", "model")


@dataclass
class HistoryPart:
    """
    One fragment of a message. `image` is either a data URL
    (data:image/png;base64,...) or, when is_image_url is set, a public URL
    that has to be fetched and re-encoded before it can be sent for editing.
    """
    text: Optional[str] = None
    image: Optional[str] = None
    is_image_url: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.text is not None:
            out["text"] = self.text
        if self.image is not None:
            out["image"] = self.image
        if self.is_image_url:
            out["isImageUrl"] = True
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryPart":
        if not isinstance(data, dict):
            raise ValueError("history part must be an object")
        text = data.get("text")
        image = data.get("image")
        if text is not None and not isinstance(text, str):
            raise ValueError("history part text must be a string")
        if image is not None and not isinstance(image, str):
            raise ValueError("history part image must be a string")
        return cls(text=text, image=image, is_image_url=bool(data.get("isImageUrl")))


@dataclass
class HistoryItem:
    role: str
    parts: List[HistoryPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(p.text for p in self.parts if p.text)

    @property
    def has_image(self) -> bool:
        return any(p.image for p in self.parts)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [p.to_dict() for p in self.parts]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryItem":
        if not isinstance(data, dict):
            raise ValueError("history item must be an object")
        role = data.get("role")
        if role not in ROLES:
            raise ValueError(f"history item role must be one of {ROLES}")
        parts = data.get("parts") or []
        if not isinstance(parts, list):
            raise ValueError("history item parts must be a list")
        return cls(role=role, parts=[HistoryPart.from_dict(p) for p in parts])


def history_from_json(items) -> List[HistoryItem]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError("history must be a list")
    return [HistoryItem.from_dict(i) for i in items]

def history_to_json(history: List[HistoryItem]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in history]
