#!/usr/bin/env python3
"""Divi converter web application."""

from __future__ import annotations

import secrets
import string
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request, url_for
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

import divi_converter

ALLOWED_MIME_TYPES = {"application/json", "text/plain", "text/json", "application/octet-stream"}
ALLOWED_EXTENSIONS = {"json", "txt"}
DEFAULT_FILENAME = "divi-converted.json"
KEY_PREFIX = "djc_download_"

app = Flask(__name__)
app.config.update(
    MAX_CONTENT_LENGTH=2 * 1024 * 1024,
    RESULT_TTL=180,
    DIVI_CONVERTER=divi_converter.DEFAULT_CONFIG,
)


class ResultStore:
    """Short-lived, read-once payloads for the download links."""

    def __init__(self) -> None:
        self._items: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def put(self, payload: str, ttl: float) -> str:
        alphabet = string.ascii_letters + string.digits
        key = KEY_PREFIX + "".join(secrets.choice(alphabet) for _ in range(12))
        with self._lock:
            self.purge_expired()
            self._items[key] = (time.monotonic() + ttl, payload)
        return key

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._items.pop(key, None)
        if item is None:
            return None
        expires, payload = item
        if expires < time.monotonic():
            return None
        return payload

    def purge_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (expires, _) in self._items.items() if expires < now]:
            del self._items[key]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


results = ResultStore()


def is_allowed_upload(filename: str, mimetype: str) -> bool:
    ext = Path(filename or "").suffix.lower().lstrip(".")
    return mimetype in ALLOWED_MIME_TYPES or ext in ALLOWED_EXTENSIONS


def read_upload() -> Tuple[Optional[str], Optional[str]]:
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return None, "Please upload a file."
    if not is_allowed_upload(upload.filename, upload.mimetype or ""):
        app.logger.info("Rejected upload %r (%s)", upload.filename, upload.mimetype)
        return None, "Invalid file type. Please upload a .json or .txt file."
    raw = upload.read().decode("utf-8-sig", errors="replace")
    if not raw:
        return None, "Could not read file contents."
    return raw, None


def run_conversion(raw: str):
    result = divi_converter.convert(raw, app.config["DIVI_CONVERTER"])
    if isinstance(result, divi_converter.ConversionFailure):
        app.logger.warning("Conversion failed (%s); tried %s", result.reason, ", ".join(result.attempts))
        return result, {}, None

    stats = result.diagnostics
    app.logger.info(
        "Converted %d block type(s) via %s, %d candidate(s) ignored",
        len(result.blocks),
        result.strategy,
        stats.ignored,
    )
    json_name = divi_converter.output_filename()
    css_name = json_name[: -len(".json")] + ".css"
    ttl = app.config["RESULT_TTL"]
    downloads = {
        "json": url_for("download", key=results.put(result.to_json(), ttl), filename=json_name),
        "css": url_for("download", key=results.put(result.rendered_css, ttl), filename=css_name),
    }
    return result, downloads, json_name


@app.get("/")
def index():
    return divi_converter.render_upload_page()


@app.post("/")
def convert_form():
    raw, error = read_upload()
    if error:
        return divi_converter.render_upload_page(error=(error, [])), 400

    result, downloads, _ = run_conversion(raw)
    if isinstance(result, divi_converter.ConversionFailure):
        return divi_converter.render_upload_page(error=divi_converter.classify_failure(result)), 422
    return divi_converter.render_upload_page(conversion=result, downloads=downloads)


@app.post("/api/convert")
def convert_api():
    payload = request.get_json(silent=True)
    text = payload.get("text") if isinstance(payload, dict) else None
    if isinstance(text, str) and text:
        raw, error = text, None
    else:
        raw, error = read_upload()
    if error:
        return jsonify({"error": error}), 400

    result, downloads, filename = run_conversion(raw)
    if isinstance(result, divi_converter.ConversionFailure):
        summary, hints = divi_converter.classify_failure(result)
        return jsonify({"error": summary, "hints": hints, "reason": result.reason, "attempts": result.attempts}), 422

    body = result.to_dict()
    body.update(
        {
            "css": result.rendered_css,
            "strategy": result.strategy,
            "filename": filename,
            "stats": result.diagnostics.to_dict(),
            "downloads": downloads,
        }
    )
    return jsonify(body)


@app.get("/api/download/<key>")
def download(key: str):
    filename = secure_filename(request.args.get("filename", "")) or DEFAULT_FILENAME
    payload = results.pop(key)
    if payload is None:
        return jsonify({"error": "Download expired or invalid."}), 404

    mimetype = "text/css" if filename.endswith(".css") else "application/json"
    resp = Response(payload, content_type=f"{mimetype}; charset=utf-8")
    resp.headers["Content-Description"] = "File Transfer"
    resp.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    resp.headers["Cache-Control"] = "no-cache, must-revalidate, max-age=0, no-store, private"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


@app.errorhandler(RequestEntityTooLarge)
def too_large(exc: RequestEntityTooLarge):
    limit = app.config["MAX_CONTENT_LENGTH"]
    return jsonify({"error": f"File too large. The limit is {limit // 1024} KB."}), 413


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8000, debug=False)
