import logging
import os
from typing import List, Optional
from urllib.parse import urljoin
from uuid import uuid4

from flask import jsonify, request, send_from_directory
from flask_jwt_extended import jwt_required
from werkzeug.utils import secure_filename

from kmercart.auth import require_role
from kmercart.errors import ApiError, ValidationError

logger = logging.getLogger(__name__)


def allowed_image_extension(filename: str, allowed_extensions) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in allowed_extensions


def save_upload(image_file, upload_folder: str, allowed_extensions) -> str:
    if not image_file or not getattr(image_file, "filename", ""):
        raise ValidationError("An image file is required.")

    original_filename = secure_filename(image_file.filename)
    if not original_filename:
        raise ValidationError("Please choose a valid file name.")
    if not allowed_image_extension(original_filename, allowed_extensions):
        raise ValidationError(
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
        )

    extension = os.path.splitext(original_filename)[1].lower()
    unique_filename = f"{uuid4().hex}{extension}"
    try:
        image_file.save(os.path.join(upload_folder, unique_filename))
    except OSError as exc:
        logger.warning("Could not store upload %s: %s", unique_filename, exc)
        raise ApiError("We could not store the uploaded image. Please try again.", 500)
    return unique_filename


def remove_upload(filename: Optional[str], upload_folder: str) -> None:
    if not filename:
        return
    try:
        os.remove(os.path.join(upload_folder, filename))
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not remove upload %s: %s", filename, exc)


def save_uploads(image_files, upload_folder: str, allowed_extensions) -> List[str]:
    """Store every file or none of them."""
    saved_filenames: List[str] = []
    for image_file in image_files:
        if not image_file or not getattr(image_file, "filename", ""):
            continue
        try:
            saved_filenames.append(save_upload(image_file, upload_folder, allowed_extensions))
        except ApiError:
            for filename in saved_filenames:
                remove_upload(filename, upload_folder)
            raise
    if not saved_filenames:
        raise ValidationError("At least one image file is required.")
    return saved_filenames


def build_upload_url(filename: str, public_url: str = "") -> str:
    base_url = public_url.rstrip("/") + "/" if public_url else request.host_url
    return urljoin(base_url, f"uploads/{filename}")


def register_routes(app, db):
    prefix = app.config["API_PREFIX"]

    def describe(filename: str):
        return {
            "filename": filename,
            "url": build_upload_url(filename, app.config.get("PUBLIC_API_URL", "")),
        }

    @app.route(f"{prefix}/upload/image", methods=["POST"])
    @jwt_required()
    def upload_image_route():
        require_role("vendor")
        filename = save_upload(
            request.files.get("file"),
            app.config["UPLOAD_FOLDER"],
            app.config["ALLOWED_IMAGE_EXTENSIONS"],
        )
        return jsonify(describe(filename)), 201

    @app.route(f"{prefix}/upload/images", methods=["POST"])
    @jwt_required()
    def upload_images_route():
        require_role("vendor")
        filenames = save_uploads(
            request.files.getlist("files"),
            app.config["UPLOAD_FOLDER"],
            app.config["ALLOWED_IMAGE_EXTENSIONS"],
        )
        return jsonify({"files": [describe(filename) for filename in filenames]}), 201

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)
