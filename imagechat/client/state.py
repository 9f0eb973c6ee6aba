"""
Front-end state for the chat UI.

All transient UI state lives in one AppState value. `reduce(state, action)`
is pure: it never performs I/O and always returns a new AppState. The I/O
shell in imagechat.client.session feeds it actions.

Submit lifecycle: idle -> submitting -> success | error -> idle (on the next
submit, reset or dismiss).
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from imagechat.models import HistoryItem, HistoryPart

IDLE = "idle"
SUBMITTING = "submitting"
SUCCESS = "success"
ERROR = "error"

SLOW_WARNING = "Request is taking longer than expected. You may want to try again or modify your prompt."
CANCELED = "Request canceled by user."
SAVE_FAILED = "Your conversation was generated but could not be saved to the database."
NO_IMAGE = "No image returned from API"


@dataclass(frozen=True)
class AppState:
    image: Optional[str] = None              # uploaded image (data URL or public URL)
    generated_image: Optional[str] = None
    description: Optional[str] = None
    phase: str = IDLE
    loading: bool = False
    loading_started_at: Optional[float] = None
    history_loading: bool = False
    error: Optional[str] = None
    warning: Optional[str] = None
    history: List[HistoryItem] = field(default_factory=list)
    conversations: List[Dict[str, Any]] = field(default_factory=list)
    cached_histories: Dict[Any, List[HistoryItem]] = field(default_factory=dict)
    current_index: int = -1
    current_conversation_id: Any = None
    sidebar_expanded: bool = True

    @property
    def current_image(self) -> Optional[str]:
        return self.generated_image or self.image

    @property
    def is_editing(self) -> bool:
        return bool(self.image or self.generated_image)


def elapsed_seconds(state: AppState, now: float) -> int:
    """Whole seconds since the current request started, 0 when idle."""
    if not state.loading or state.loading_started_at is None:
        return 0
    return max(0, int(now - state.loading_started_at))

def last_image(history: List[HistoryItem]) -> Optional[str]:
    for item in reversed(history):
        for part in item.parts:
            if part.image:
                return part.image
    return None

def _user_message(state: AppState, prompt: str) -> HistoryItem:
    parts = [HistoryPart(text=prompt)]
    # only the first user message of a conversation carries the source image
    image = state.current_image
    if image and not any(i.role == "user" for i in state.history):
        parts.append(HistoryPart(image=image, is_image_url=image.startswith(("http://", "https://"))))
    return HistoryItem(role="user", parts=parts)

def _cleared(state: AppState) -> AppState:
    return replace(
        state,
        image=None, generated_image=None, description=None,
        phase=IDLE, loading=False, loading_started_at=None,
        error=None, warning=None, history=[],
        current_index=-1, current_conversation_id=None,
    )


def reduce(state: AppState, action: Dict[str, Any]) -> AppState:
    kind = action["type"]

    if kind == "select_image":
        return replace(state, image=action.get("image") or None)

    if kind == "image_resolved":
        original, data_url = action["original"], action["data_url"]
        return replace(
            state,
            image=data_url if state.image == original else state.image,
            generated_image=data_url if state.generated_image == original else state.generated_image,
        )

    if kind == "submit_started":
        return replace(
            state,
            phase=SUBMITTING, loading=True, loading_started_at=action["now"],
            error=None, warning=None,
            history=state.history + [_user_message(state, action["prompt"])],
        )

    if kind == "submit_succeeded":
        image = action.get("image")
        if not image:
            return replace(state, phase=ERROR, loading=False, loading_started_at=None, error=NO_IMAGE)
        description = action.get("description") or None
        parts = ([HistoryPart(text=description)] if description else []) + [HistoryPart(image=image)]
        return replace(
            state,
            phase=SUCCESS, loading=False, loading_started_at=None,
            generated_image=image, description=description,
            history=state.history + [HistoryItem(role="model", parts=parts)],
        )

    if kind == "submit_failed":
        # the optimistic user message stays in history
        return replace(state, phase=ERROR, loading=False, loading_started_at=None,
                       error=action.get("error") or "An error occurred")

    if kind == "cancel":
        return replace(state, phase=IDLE, loading=False, loading_started_at=None, error=CANCELED)

    if kind == "slow_warning":
        if state.phase != SUBMITTING:
            return state
        return replace(state, error=SLOW_WARNING)

    if kind == "dismiss_error":
        return replace(state, phase=IDLE if state.phase == ERROR else state.phase, error=None)

    if kind == "save_failed":
        return replace(state, warning=SAVE_FAILED)

    if kind == "saved":
        cid = action["conversation_id"]
        conversations = action.get("conversations", state.conversations)
        ids = [c["id"] for c in conversations]
        cached = dict(state.cached_histories)
        cached[cid] = action.get("history", state.history)
        return replace(
            state,
            conversations=conversations,
            cached_histories=cached,
            current_conversation_id=cid,
            current_index=ids.index(cid) if cid in ids else 0,
        )

    if kind == "reset":
        return _cleared(state)

    if kind == "new_conversation_with_image":
        current = state.current_image
        cleared = replace(state, history=[], current_index=-1, current_conversation_id=None)
        if current:
            cleared = replace(cleared, image=current, generated_image=None)
        return cleared

    if kind == "history_loading":
        return replace(state, history_loading=bool(action.get("loading")))

    if kind == "conversations_loaded":
        cached = dict(state.cached_histories)
        cached.update(action.get("histories") or {})
        return replace(state, conversations=list(action["conversations"]),
                       cached_histories=cached, history_loading=False)

    if kind == "conversation_selected":
        history = action["history"]
        cid = action["conversation_id"]
        if not history:
            return replace(_cleared(state), history_loading=False)
        cached = dict(state.cached_histories)
        cached[cid] = history
        return replace(
            state,
            image=None, generated_image=last_image(history), description=None,
            error=None, warning=None, phase=IDLE,
            history=list(history), cached_histories=cached,
            current_index=action["index"], current_conversation_id=cid,
            history_loading=False,
        )

    if kind == "conversation_deleted":
        index = action["index"]
        conversations = list(state.conversations)
        removed = conversations.pop(index)
        cached = {k: v for k, v in state.cached_histories.items() if k != removed["id"]}
        out = replace(state, conversations=conversations, cached_histories=cached, history_loading=False)
        if index == state.current_index:
            return _cleared(out)
        if index < state.current_index:
            return replace(out, current_index=state.current_index - 1)
        return out

    if kind == "error":
        return replace(state, error=action.get("error"), history_loading=False)

    if kind == "toggle_sidebar":
        return replace(state, sidebar_expanded=not state.sidebar_expanded)

    raise ValueError(f"unknown action: {kind}")
