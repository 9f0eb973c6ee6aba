from flask import Blueprint, request, jsonify

from imagechat.log import log
from imagechat.services.errors import GenerationError
from imagechat.services.generation import GenerationRequest, generate

image_bp = Blueprint("image", __name__)

@image_bp.post("/api/image")
def generate_image():
    """
    Generate or edit an image.
      JSON: {prompt, image?, history?, model?, aspectRatio?, isEditing?}
    -> 200 {image, description} | 4xx/5xx {error, details?, possibleCause?}
    """
    body = request.get_json(silent=True)
    try:
        req = GenerationRequest.from_json(body)
        result = generate(req)
    except GenerationError as e:
        return jsonify(e.to_dict()), e.status
    except Exception as e:
        log(f"[image] [ERROR] Error generating image: {e}")
        return jsonify({"error": "Failed to generate image", "details": str(e)}), 500

    log(f"[image] OK provider={result.provider} fell_back={result.fell_back} "
        f"image={len(result.image)} chars description={'yes' if result.description else 'no'}")
    return jsonify(result.to_dict())
