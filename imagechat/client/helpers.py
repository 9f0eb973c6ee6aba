from typing import List, Optional

from imagechat.client.state import last_image
from imagechat.models import HistoryItem

SIDEBAR_TITLE_LENGTH = 20

STYLE_PRESETS = [
    ("Photorealistic", "in photorealistic style"),
    ("Oil Painting", "in the style of an oil painting"),
    ("Watercolor", "in watercolor style"),
    ("Anime", "in anime style"),
    ("3D Render", "as a 3D rendered image"),
    ("Sketch", "as a pencil sketch"),
    ("Neon", "with neon lighting effects"),
    ("Vintage", "in vintage film style"),
    ("Cinematic", "in cinematic style with dramatic lighting"),
    ("Comic Book", "in comic book style"),
    ("Minimalist", "in minimalist style"),
    ("Fantasy", "in fantasy art style"),
]

COMPOSITION_TEMPLATES = [
    ("Portrait", "a portrait shot of"),
    ("Landscape", "a wide landscape view of"),
    ("Close-up", "an extreme close-up of"),
    ("Aerial", "an aerial view of"),
    ("Side View", "a side view of"),
    ("Golden Hour", "during golden hour lighting"),
    ("Night Scene", "at night with moonlight"),
    ("Macro", "a macro photography shot of"),
    ("Silhouette", "as a silhouette against"),
    ("High Contrast", "with high contrast lighting"),
    ("Symmetrical", "with symmetrical composition"),
    ("Rule of Thirds", "composed using the rule of thirds"),
]

def apply_helper(prompt: str, helper_text: str) -> str:
    prompt = (prompt or "").rstrip()
    return f"{prompt} {helper_text}" if prompt else helper_text

def conversation_title(history: List[HistoryItem], index: int) -> str:
    """Sidebar label: first user prompt, cut to 20 characters."""
    first_user = next((i for i in history if i.role == "user"), None)
    title = None
    if first_user and first_user.parts:
        title = first_user.parts[0].text
    title = title or f"Conversation {index + 1}"
    return title[:SIDEBAR_TITLE_LENGTH] + "..." if len(title) > SIDEBAR_TITLE_LENGTH else title

def conversation_thumbnail(history: List[HistoryItem]) -> Optional[str]:
    return last_image(history)
