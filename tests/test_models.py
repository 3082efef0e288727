"""Tests for model validation and derived values."""

from datetime import datetime

import pydantic
import pytest

from collectarr.core.config import mask_secret
from collectarr.models.collection import CollectionPolicy, SourceType
from collectarr.models.dispatch import DispatchOutcome, DispatchResult
from collectarr.models.media import MediaType
from collectarr.models.server import RadarrServer
from collectarr.models.sync import SyncLog, SyncStatus, compute_sync_status
from collectarr.services.runner import refresh_cron


@pytest.mark.parametrize(
    ("matched", "total", "error", "expected"),
    [
        (10, 10, None, SyncStatus.SUCCESS),
        (8, 10, None, SyncStatus.PARTIAL),
        (0, 10, "timeout", SyncStatus.FAILED),
        (0, 0, None, SyncStatus.SUCCESS),
        (3, 10, "partial failure", SyncStatus.PARTIAL),
    ],
)
def test_compute_sync_status(matched: int, total: int, error, expected: SyncStatus) -> None:
    assert compute_sync_status(matched, total, error) == expected


def test_sync_log_rejects_more_matches_than_items() -> None:
    with pytest.raises(pydantic.ValidationError):
        SyncLog(
            collection_id="c",
            emby_server_id="s",
            status=SyncStatus.SUCCESS,
            items_matched=5,
            items_total=4,
            started_at=datetime.now(),
        )


def test_sync_log_is_immutable() -> None:
    log = SyncLog.record(collection_id="c", emby_server_id="s", started_at=datetime.now())
    with pytest.raises(pydantic.ValidationError):
        log.status = SyncStatus.FAILED


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "x", "refresh_time": "25:00"},
        {"name": "x", "refresh_time": "7:30"},
        {"name": "x", "refresh_interval_hours": 0},
        {"name": "x", "source_type": SourceType.MANUAL, "source_id": "list"},
        {"name": "x", "source_type": SourceType.MDBLIST},
    ],
)
def test_collection_policy_rejects_invalid_payloads(payload: dict) -> None:
    with pytest.raises(pydantic.ValidationError):
        CollectionPolicy.model_validate(payload)


def test_collection_policy_defaults() -> None:
    policy = CollectionPolicy(name="Favourites")

    assert policy.source_type == SourceType.MANUAL
    assert policy.refresh_interval_hours == 24
    assert policy.emby_server_ids == set()
    assert not policy.remove_from_emby


def test_media_type_parse() -> None:
    assert MediaType.parse("tv") == MediaType.SHOW
    assert MediaType.parse("Series") == MediaType.SHOW
    assert MediaType.parse("movie") == MediaType.MOVIE
    assert MediaType.parse("") == MediaType.MOVIE


def test_server_public_view_masks_api_key() -> None:
    server = RadarrServer(name="Radarr", url="http://radarr", api_key="abcdef123456")

    view = server.public_view()

    assert view["api_key"] == "abcd********"
    assert view["server_type"] == "radarr"
    assert not server.is_configured
    assert mask_secret(None) == "(not set)"


def test_dispatch_result_ok() -> None:
    assert DispatchResult(outcome=DispatchOutcome.ALREADY_EXISTS).ok
    assert not DispatchResult(outcome=DispatchOutcome.ERROR).ok


@pytest.mark.parametrize(
    ("hours", "time", "expected"),
    [
        (1, "03:15", "15 * * * *"),
        (6, "03:15", "15 */6 * * *"),
        (24, "03:15", "15 3 * * *"),
        (36, "03:15", "15 3 */2 * *"),
        (168, "00:00", "0 0 */7 * *"),
        (720, "04:30", "30 4 1 * *"),
    ],
)
def test_refresh_cron(hours: int, time: str, expected: str) -> None:
    assert refresh_cron(hours, time) == expected
