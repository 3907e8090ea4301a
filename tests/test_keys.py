import hashlib
import re

from taskflow.app.utils.keys import KeyBuilder


def test_timestamped_key_shape() -> None:
    key = KeyBuilder.timestamped("photo.png")

    assert re.fullmatch(r"photo\.png-\d{13}-[0-9a-f]{8}", key)


def test_timestamped_key_is_deterministic_with_inputs() -> None:
    assert KeyBuilder.timestamped("a.jpg", now_ms=1700000000000, token="deadbeef") == "a.jpg-1700000000000-deadbeef"


def test_safe_filename_strips_directories_and_unsafe_chars() -> None:
    assert KeyBuilder.safe_filename("C:\\Users\\me\\My Photo (1).png") == "My_Photo_1_.png"
    assert KeyBuilder.safe_filename("../../etc/passwd") == "passwd"
    assert KeyBuilder.safe_filename("") == "upload"
    assert KeyBuilder.safe_filename(None) == "upload"


def test_content_strategy_uses_sha256() -> None:
    digest = hashlib.sha256(b"img").hexdigest()

    assert KeyBuilder.build("content", "x.png", b"img") == f"{digest}-x.png"
    assert KeyBuilder.build("content", "x.png", b"img") == KeyBuilder.build("CONTENT", "x.png", b"img")


def test_unknown_strategy_falls_back_to_timestamp() -> None:
    assert KeyBuilder.build("", "x.png", b"img").startswith("x.png-")
