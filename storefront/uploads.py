import hashlib
import os
import secrets
import time
from typing import List, Optional, Tuple

import requests
from flask import current_app, request, send_from_directory
from flask_jwt_extended import jwt_required
from werkzeug.utils import secure_filename

from .helpers import error_response, success_response
from .security import require_admin_user


class UploadError(Exception):
    pass


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in current_app.config["ALLOWED_IMAGE_EXTENSIONS"]


def cloudinary_configured() -> bool:
    config = current_app.config
    return bool(
        config.get("CLOUDINARY_CLOUD_NAME")
        and config.get("CLOUDINARY_API_KEY")
        and config.get("CLOUDINARY_API_SECRET")
    )


def cloudinary_signature(params: dict, api_secret: str) -> str:
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def upload_to_cloudinary(image_file) -> str:
    config = current_app.config
    params = {"folder": config.get("CLOUDINARY_FOLDER"), "timestamp": int(time.time())}
    data = dict(params)
    data["api_key"] = config["CLOUDINARY_API_KEY"]
    data["signature"] = cloudinary_signature(params, config["CLOUDINARY_API_SECRET"])
    url = f"https://api.cloudinary.com/v1_1/{config['CLOUDINARY_CLOUD_NAME']}/image/upload"
    try:
        response = requests.post(
            url,
            data=data,
            files={"file": (image_file.filename, image_file.stream, image_file.mimetype)},
            timeout=30,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        current_app.logger.error("Cloudinary upload failed: %s", exc)
        raise UploadError("We could not store the uploaded image. Please try again.") from exc
    return response.json()["secure_url"]


def save_local_image(image_file, subfolder: str) -> str:
    original_filename = secure_filename(image_file.filename)
    extension = os.path.splitext(original_filename)[1].lower()
    unique_filename = f"{subfolder.rstrip('s')}-{int(time.time() * 1000)}-{secrets.token_hex(8)}{extension}"
    directory = os.path.join(current_app.config["UPLOAD_FOLDER"], subfolder)
    os.makedirs(directory, exist_ok=True)
    try:
        image_file.save(os.path.join(directory, unique_filename))
    except OSError as exc:
        raise UploadError("We could not store the uploaded image. Please try again.") from exc
    return f"/uploads/{subfolder}/{unique_filename}"


def remove_local_image(url: Optional[str]):
    if not url or not str(url).startswith("/uploads/"):
        return
    relative_path = str(url)[len("/uploads/"):]
    target = os.path.join(current_app.config["UPLOAD_FOLDER"], relative_path)
    try:
        os.remove(target)
    except OSError:
        return


def check_image_file(image_file) -> Optional[str]:
    filename = secure_filename(getattr(image_file, "filename", "") or "")
    if not filename:
        return "Please choose a valid file name."
    if not allowed_image_extension(filename):
        return "Invalid file extension. Only JPG, JPEG, PNG, GIF, and WEBP files are allowed."
    mimetype = getattr(image_file, "mimetype", "") or ""
    if mimetype and not mimetype.startswith("image/"):
        return "Not an image! Please upload only images."
    return None


def save_images(image_files, subfolder: str = "products", allow_remote: bool = True) -> Tuple[List[str], Optional[str]]:
    """Store uploaded images and return their public URLs.

    Uploads go to Cloudinary when it is configured and ``allow_remote`` is
    set, otherwise to local disk. Nothing is kept when one file fails.
    """
    files = [item for item in image_files or [] if item and getattr(item, "filename", "")]
    max_files = current_app.config.get("MAX_UPLOAD_FILES", 6)
    if len(files) > max_files:
        return [], f"Too many files. Maximum is {max_files} files"

    for image_file in files:
        file_error = check_image_file(image_file)
        if file_error:
            return [], file_error

    use_remote = allow_remote and cloudinary_configured()
    saved: List[str] = []
    try:
        for image_file in files:
            if use_remote:
                saved.append(upload_to_cloudinary(image_file))
            else:
                saved.append(save_local_image(image_file, subfolder))
    except UploadError as exc:
        for url in saved:
            remove_local_image(url)
        return [], str(exc)
    return saved, None


def register_upload_routes(app, db):
    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/api/uploads", methods=["POST"])
    @jwt_required()
    def upload_images():
        _, admin_error = require_admin_user(db)
        if admin_error:
            return admin_error

        image_files = request.files.getlist("images") or request.files.getlist("image")
        if not image_files:
            return error_response("Please upload at least one image", 400)

        urls, upload_error = save_images(image_files)
        if upload_error:
            return error_response(upload_error, 400)
        return success_response({"urls": urls}, 201)
