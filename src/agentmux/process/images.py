"""Image attachments: stream-json input messages and temp-file fallbacks."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
import tempfile
import time

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def parse_data_url(data_url: str) -> tuple[str, str] | None:
    """Split a ``data:<media>;base64,<payload>`` URL into (media_type, payload)."""
    match = _DATA_URL.match(data_url)
    if not match:
        return None
    return match.group("media"), match.group("data")


def build_stream_json_message(prompt: str, images: list[str]) -> str:
    """Build one stream-json user message: image blocks first, then the text."""
    content: list[dict] = []
    for image in images:
        parsed = parse_data_url(image)
        if parsed is None:
            logger.warning("Skipping image that is not a base64 data URL")
            continue
        media_type, data = parsed
        content.append(
            {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            }
        )
    content.append({"type": "text", "text": prompt})
    return json.dumps({"type": "user", "message": {"role": "user", "content": content}})


def save_image_to_temp_file(data_url: str, index: int) -> str | None:
    """Decode ``data_url`` to a temp file. Returns the path, or None on bad input."""
    parsed = parse_data_url(data_url)
    if parsed is None:
        logger.warning("Image %d is not a base64 data URL", index)
        return None
    media_type, data = parsed
    try:
        payload = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        logger.warning("Could not decode image %d: %s", index, e)
        return None

    ext = _EXTENSIONS.get(media_type, ".png")
    path = os.path.join(
        tempfile.gettempdir(), f"agentmux-image-{int(time.time() * 1000)}-{index}{ext}"
    )
    with open(path, "wb") as f:
        f.write(payload)
    logger.debug("Saved image %d to %s (%d bytes)", index, path, len(payload))
    return path


def cleanup_temp_files(paths: list[str]) -> None:
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove temp image %s: %s", path, e)
