# drivers/media_source.py
import logging
from typing import Any, Dict

from aiortc.contrib.media import MediaPlayer

from service.video_service import LocalMedia, pattern_media

logger = logging.getLogger("media_source")


class MediaSourceError(Exception):
    """Local capture source could not be opened."""


def open_local_media(config: Dict[str, Any]) -> LocalMedia:
    """
    Opens the configured capture source.

    ``source`` empty  -> synthetic test pattern
    ``source`` set    -> device or file through PyAV (e.g. ``/dev/video0`` with
                         format ``v4l2``, or a media file path)
    """
    source = config.get("source")
    width = int(config.get("width", 640))
    height = int(config.get("height", 480))

    if not source:
        logger.info(f"No MEDIA_SOURCE configured, using test pattern {width}x{height}")
        return pattern_media(width=width, height=height)

    options = {
        "video_size": f"{width}x{height}",
        "framerate": str(config.get("fps", 30)),
    }
    try:
        logger.info(f"Opening media source {source} (format={config.get('format')})")
        player = MediaPlayer(source, format=config.get("format") or None, options=options)
    except Exception as e:
        logger.error(f"Failed to open media source {source}: {e}")
        raise MediaSourceError(f"Cannot open media source {source}: {e}") from e

    tracks = [track for track in (player.audio, player.video) if track is not None]
    if not tracks:
        raise MediaSourceError(f"Media source {source} has no audio or video stream")
    logger.info(f"Media source {source} opened with {[t.kind for t in tracks]}")
    return LocalMedia(tracks, player=player)
