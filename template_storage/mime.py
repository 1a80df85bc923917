"""
Content types for stored template files.

Browsers only render live previews correctly when html, css and js are served
with their real content type, so every upload sets one from this table.
"""

from __future__ import annotations

DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES = {
    # Web
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "mjs": "application/javascript",
    "jsx": "text/jsx",
    "ts": "application/typescript",
    "tsx": "application/typescript",
    "json": "application/json",
    "map": "application/json",
    "xml": "application/xml",
    # Images
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "ico": "image/x-icon",
    # Fonts
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
    "otf": "font/otf",
    "eot": "application/vnd.ms-fontobject",
    # Documents and config
    "txt": "text/plain",
    "md": "text/markdown",
    "pdf": "application/pdf",
    "yml": "application/yaml",
    "yaml": "application/yaml",
    "toml": "application/toml",
    "zip": "application/zip",
}


def get_extension(filename: str) -> str:
    base = filename.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[-1].lower()


def get_mime_type(filename: str) -> str:
    return MIME_TYPES.get(get_extension(filename), DEFAULT_MIME_TYPE)
