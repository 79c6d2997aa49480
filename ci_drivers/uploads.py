"""Payload preparation for native asset uploads."""

import codecs
import mimetypes
from dataclasses import dataclass
from pathlib import Path

# Leading bytes of the formats reports usually embed
SIGNATURES: list[tuple[bytes, str]] = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF-", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
]


@dataclass
class UploadData:
    """File content ready for a multipart upload."""

    data: bytes
    filename: str
    mime: str
    size: int


def sniff_mime(data: bytes) -> str:
    """Guess a mime type from content alone."""
    for signature, mime in SIGNATURES:
        if data.startswith(signature):
            return mime

    head = data[:512].lstrip()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
        return "image/svg+xml"
    try:
        codecs.getincrementaldecoder("utf-8")().decode(data[:1024], final=False)
    except UnicodeDecodeError:
        return "application/octet-stream"
    return "text/plain"


def fetch_upload_data(
    path: Path | None = None,
    buffer: bytes | None = None,
    mime_type: str | None = None,
) -> UploadData:
    """
    Read an upload payload and work out its size and mime type.

    Args:
        path: File to upload
        buffer: In-memory content, used when no path is given
        mime_type: Explicit mime type, overriding detection

    Raises:
        ValueError: If neither path nor buffer is given
    """
    if path is not None:
        path = Path(path)
        data = path.read_bytes()
        filename = path.name
    elif buffer is not None:
        data = buffer
        filename = "file"
    else:
        raise ValueError("Either path or buffer is required for an upload")

    mime = mime_type
    if not mime and path is not None:
        mime, _ = mimetypes.guess_type(path.name)
    if not mime:
        mime = sniff_mime(data)

    if filename == "file":
        extension = mimetypes.guess_extension(mime) or ""
        filename = f"file{extension}"

    return UploadData(data=data, filename=filename, mime=mime, size=len(data))
