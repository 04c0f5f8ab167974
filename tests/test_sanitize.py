from __future__ import annotations

from streamvault.models import Vod
from streamvault.publish.sanitize import (
    DESCRIPTION_LIMIT,
    TITLE_LIMIT,
    build_description,
    build_metadata,
    build_title,
)


def _vod(**overrides) -> Vod:
    data = dict(
        id=1,
        source_vod_id="v1",
        channel="somechannel",
        title="Speedrun <any%> attempts",
        broadcast_start="2024-01-01T12:00:00.000000Z",
        duration_seconds=60,
        description=None,
        priority=0,
        created_at="2024-01-02T00:00:00.000000Z",
        processed=False,
        published_url=None,
    )
    data.update(overrides)
    return Vod(**data)


def test_title_has_date_prefix_and_no_angle_brackets():
    assert build_title(_vod()) == "2024-01-01 Speedrun any% attempts"


def test_title_is_truncated():
    title = build_title(_vod(title="word " * 60))
    assert len(title) <= TITLE_LIMIT
    assert title.endswith("...")


def test_blank_title_gets_default():
    assert build_title(_vod(title="  \n\t ")) == "2024-01-01 Twitch VOD"


def test_title_falls_back_to_created_at():
    assert build_title(_vod(broadcast_start=None)).startswith("2024-01-02 ")


def test_default_description():
    assert build_description(_vod()) == "Uploaded from Twitch VOD on 2024-01-01T12:00:00Z"


def test_custom_description_keeps_newlines():
    vod = _vod(description="line one\nline two\x07")
    assert build_description(vod) == "line one\nline two"


def test_description_is_truncated():
    assert len(build_description(_vod(description="x" * 6000))) == DESCRIPTION_LIMIT


def test_metadata_body():
    body = build_metadata(_vod(), privacy="unlisted", category_id="22").to_body()
    assert body["status"] == {"privacyStatus": "unlisted"}
    assert body["snippet"]["categoryId"] == "22"
    assert body["snippet"]["tags"] == ["somechannel"]
