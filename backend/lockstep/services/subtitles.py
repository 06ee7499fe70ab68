import re

SUBTITLE_EXTENSIONS = (".vtt", ".srt")

_SRT_TIMESTAMP = re.compile(r"(\d{2}:\d{2}:\d{2}),(\d{3})")


def srt_to_vtt(text: str) -> str:
    """Convert SubRip text to WebVTT: ``HH:MM:SS,mmm`` becomes ``HH:MM:SS.mmm``."""
    text = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    return "WEBVTT\n\n" + _SRT_TIMESTAMP.sub(r"\1.\2", text)


def is_subtitle_file(filename: str) -> bool:
    return filename.lower().endswith(SUBTITLE_EXTENSIONS)


def prepare_subtitles(filename: str, data: bytes):
    """Return ``(filename, body, content_type)`` ready for storage.

    ``.srt`` files are transcoded and renamed to ``.vtt``; ``.vtt`` files are
    stored untouched.
    """
    if filename.lower().endswith(".srt"):
        body = srt_to_vtt(data.decode("utf-8", errors="replace")).encode("utf-8")
        return filename[: -len(".srt")] + ".vtt", body, "text/vtt"
    return filename, data, "text/vtt"
