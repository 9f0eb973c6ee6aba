from flask import Flask
from flask_cors import CORS

from imagechat import config
from imagechat.db import init_db
from imagechat.log import log
from imagechat.routes.conversations import conv_bp
from imagechat.routes.image import image_bp
from imagechat.routes.storage import storage_bp
from imagechat.services.storage import ensure_bucket

def create_app():
    app = Flask(__name__)
    CORS(app)
    # inline images in request bodies are large
    app.config["MAX_CONTENT_LENGTH"] = 32 * 1024 * 1024
    # ensure storage dirs
    ensure_bucket()
    init_db()
    # routes
    app.register_blueprint(image_bp)
    app.register_blueprint(conv_bp)
    app.register_blueprint(storage_bp)
    if not config.GEMINI_API_KEY:
        log("[INIT] WARNING: GEMINI_API_KEY not set. /api/image will answer 500.")
    return app

if __name__ == "__main__":
    create_app().run(debug=not config.is_production())
