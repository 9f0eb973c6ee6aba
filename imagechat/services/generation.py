from dataclasses import dataclass
from typing import Any, Dict, Optional

from imagechat import config
from imagechat.log import log
from imagechat.services import imagen, model
from imagechat.services.errors import GenerationError, UpstreamError
from imagechat.services.image_utils import ImageInputError, parse_data_url

IMAGEN = "imagen-3"
GEMINI = "gemini"
MODELS = (IMAGEN, GEMINI)


@dataclass
class GenerationRequest:
    prompt: str
    image: Any = None
    history: Any = None
    aspect_ratio: Optional[str] = None
    model: Optional[str] = None
    is_editing: bool = False

    @classmethod
    def from_json(cls, body) -> "GenerationRequest":
        if not isinstance(body, dict):
            body = {}
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise GenerationError(400, "Prompt is required")
        image = body.get("image")
        if image == "":
            image = None
        return cls(
            prompt=prompt,
            image=image,
            history=body.get("history"),
            aspect_ratio=body.get("aspectRatio"),
            model=body.get("model"),
            is_editing=bool(body.get("isEditing")),
        )

    @property
    def needs_edit_backend(self) -> bool:
        return self.image is not None or self.is_editing


@dataclass
class GenerationResult:
    provider: str           # which backend produced the image
    image: str              # data:<mime>;base64,<data>
    description: Optional[str]
    fell_back: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"image": self.image, "description": self.description}


def _gemini(req: GenerationRequest, fell_back: bool = False) -> GenerationResult:
    image = None
    if req.image is not None:
        log(f"[image] Processing image edit request with prompt: {req.prompt[:50]}")
        try:
            image = parse_data_url(req.image)
        except ImageInputError as e:
            log(f"[image] [ERROR] {e}")
            raise GenerationError(400, str(e))
    try:
        b64, mime, text = model.generate_with_gemini(req.prompt, image)
    except ImageInputError as e:
        raise GenerationError(400, "Invalid image input", details=str(e))
    except UpstreamError as e:
        log(f"[image] [ERROR] Error in generateContent: {e}")
        raise GenerationError.from_upstream(e)
    return GenerationResult(GEMINI, f"data:{mime};base64,{b64}", text, fell_back=fell_back)


def _imagen(req: GenerationRequest) -> GenerationResult:
    b64, mime = imagen.generate_with_imagen(req.prompt, imagen.validate_aspect_ratio(req.aspect_ratio))
    description = f'Image generated with Imagen 3 for prompt: "{req.prompt}"'
    return GenerationResult(IMAGEN, f"data:{mime};base64,{b64}", description)


def generate(req: GenerationRequest) -> GenerationResult:
    """
    Pick a backend and normalize its output.
      - image present or isEditing -> Gemini, whatever model was asked for
      - model imagen-3 -> Imagen; in production a failure falls back to Gemini
      - anything else -> Gemini
    Raises GenerationError with the HTTP status and body to return.
    """
    if not config.GEMINI_API_KEY:
        log("[image] [ERROR] GEMINI_API_KEY is not set in environment variables")
        raise GenerationError(500, "API key not configured")

    if req.needs_edit_backend:
        if req.model == IMAGEN:
            log("[image] editing request, ignoring imagen-3 and using the edit-capable backend")
        return _gemini(req)

    if req.model == IMAGEN:
        try:
            return _imagen(req)
        except UpstreamError as e:
            if config.is_production():
                log(f"[image] [WARN] Imagen failed ({e}), falling back to Gemini")
                return _gemini(req, fell_back=True)
            log(f"[image] [ERROR] Imagen failed: {e}")
            raise GenerationError.from_upstream(e)

    return _gemini(req)
