from __future__ import annotations

import io
import logging
import mimetypes
from pathlib import Path
from typing import Iterable

from google.genai import types
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

IMAGE_FORMATS = frozenset(
    {"bmp", "dds", "gif", "ico", "jpeg", "jpg", "png", "pnm", "qoi", "tga", "tiff", "webp"}
)
VIDEO_FORMATS = frozenset({"mp4", "mpeg", "mpg", "mov", "avi", "flv", "webm", "wmv", "3gp"})
AUDIO_FORMATS = frozenset(
    {"aac", "flac", "mp3", "m4a", "mpga", "opus", "pcm", "wav", "aiff", "ogg"}
)
DOCUMENT_FORMATS = frozenset(
    {
        "pdf", "txt", "md", "json", "csv", "html", "xml", "py", "rs", "js", "ts",
        "c", "cpp", "h", "java", "go", "rb", "sh", "yaml", "yml", "toml",
    }
)
ALL_FORMATS = IMAGE_FORMATS | VIDEO_FORMATS | AUDIO_FORMATS | DOCUMENT_FORMATS

# Gemini が inline data として受け付ける MIME タイプ
GEMINI_MIME = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/webp",
        "audio/aac",
        "audio/flac",
        "audio/mp3",
        "audio/m4a",
        "audio/mpeg",
        "audio/mpga",
        "audio/opus",
        "audio/pcm",
        "audio/wav",
        "audio/webm",
        "audio/aiff",
        "audio/ogg",
        "video/mp4",
        "video/mpeg",
        "video/mov",
        "video/avi",
        "video/x-flv",
        "video/mpg",
        "video/webm",
        "video/wmv",
        "video/3gpp",
        "application/pdf",
        "text/plain",
    }
)

_MIME_BY_EXTENSION = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "mp3": "audio/mp3",
    "m4a": "audio/m4a",
    "mpga": "audio/mpga",
    "opus": "audio/opus",
    "pcm": "audio/pcm",
    "wav": "audio/wav",
    "aiff": "audio/aiff",
    "ogg": "audio/ogg",
    "mp4": "video/mp4",
    "mpeg": "video/mpeg",
    "mpg": "video/mpg",
    "mov": "video/mov",
    "avi": "video/avi",
    "flv": "video/x-flv",
    "webm": "video/webm",
    "wmv": "video/wmv",
    "3gp": "video/3gpp",
    "pdf": "application/pdf",
}

# Inline data のリクエスト上限 (20 MiB)
MAX_INLINE_BYTES = 20 * 1024 * 1024


class AttachmentError(Exception):
    """Raised when a file cannot be attached to a request."""


def extension_of(path: Path) -> str:
    return path.suffix.lower().lstrip(".")


def classify(path: Path) -> str:
    ext = extension_of(Path(path))
    if not ext:
        raise AttachmentError(f"{Path(path).name}: no extension")
    if ext in IMAGE_FORMATS:
        return "image"
    if ext in VIDEO_FORMATS:
        return "video"
    if ext in AUDIO_FORMATS:
        return "audio"
    if ext in DOCUMENT_FORMATS:
        return "document"
    raise AttachmentError(f"{Path(path).name}: unsupported file type")


def partition_supported(paths: Iterable[Path | str]) -> tuple[list[Path], list[tuple[Path, str]]]:
    """Split dropped or picked files into accepted paths and (path, reason) rejections."""

    accepted: list[Path] = []
    rejected: list[tuple[Path, str]] = []
    for raw in paths:
        path = Path(raw)
        ext = extension_of(path)
        if not ext:
            logger.warning("File %s has no extension", path)
            rejected.append((path, "no extension"))
        elif ext not in ALL_FORMATS:
            logger.warning("File %s has unsupported extension %s", path, ext)
            rejected.append((path, "unsupported file type"))
        else:
            accepted.append(path)
    return accepted, rejected


def file_dialog_filters() -> str:
    def pattern(formats: Iterable[str]) -> str:
        return " ".join(f"*.{ext}" for ext in sorted(formats))

    return ";;".join(
        [
            f"Media & Text ({pattern(ALL_FORMATS)})",
            f"Image ({pattern(IMAGE_FORMATS)})",
            f"Video ({pattern(VIDEO_FORMATS)})",
            f"Audio ({pattern(AUDIO_FORMATS)})",
            f"Document ({pattern(DOCUMENT_FORMATS)})",
        ]
    )


def mime_type_for(path: Path) -> str:
    ext = extension_of(Path(path))
    if ext in _MIME_BY_EXTENSION:
        return _MIME_BY_EXTENSION[ext]
    if ext in DOCUMENT_FORMATS:
        # JSON やソースコードはテキストとして送る
        return "text/plain"
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or "application/octet-stream"


def to_part(path: Path) -> types.Part:
    path = Path(path)
    mime_type = mime_type_for(path)
    is_image = mime_type.startswith("image/") or extension_of(path) in IMAGE_FORMATS
    try:
        if not is_image:
            # 画像以外は変換しないので読み込む前にサイズを確認する
            _check_size(path, path.stat().st_size)
        data = path.read_bytes()
    except FileNotFoundError as exc:
        raise AttachmentError(f"{path.name}: file not found") from exc
    except OSError as exc:
        raise AttachmentError(f"{path.name}: {exc}") from exc

    if is_image:
        data, mime_type = _normalize_image(path, data, mime_type)

    if mime_type not in GEMINI_MIME:
        raise AttachmentError(f"{path.name}: unsupported MIME type {mime_type}")
    _check_size(path, len(data))

    logger.info("Processing file %s (%s, %d bytes)", path, mime_type, len(data))
    return types.Part.from_bytes(data=data, mime_type=mime_type)


def _check_size(path: Path, size: int) -> None:
    if size > MAX_INLINE_BYTES:
        raise AttachmentError(f"{path.name}: {size} bytes exceeds the {MAX_INLINE_BYTES} byte inline limit")


def _normalize_image(path: Path, data: bytes, mime_type: str) -> tuple[bytes, str]:
    """Re-encode anything that is not PNG or JPEG to PNG."""

    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = (image.format or "").upper()
            if image_format == "PNG":
                return data, "image/png"
            if image_format in ("JPEG", "MPO"):
                return data, "image/jpeg"
            logger.debug("Got %s image %s, converting to png", image_format or "unknown", path.name)
            if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                image = image.convert("RGBA")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
    except UnidentifiedImageError:
        # 判別できない画像はそのまま送る（MIME チェックで弾かれる可能性あり）
        return data, mime_type
    except OSError as exc:
        raise AttachmentError(f"{path.name}: failed to convert image: {exc}") from exc
    return buffer.getvalue(), "image/png"
