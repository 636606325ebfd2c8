import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from filedrop.models import Base, ConsolidatedStatus, HealthRecord, RawStatus, derive_raw_status
from filedrop.repositories import HealthRecordRepository
from filedrop.services.cloud_storage.error_classifier import build_classification
from filedrop.services.cloud_storage.error_types import ErrorKind
from filedrop.services.cloud_storage.health_store import HealthRecordStore
from filedrop.utils.time_utils import Datetime


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """文件型 SQLite：每个会话独占连接，用于并发写入场景"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'health.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.parametrize(
    "failures, expected",
    [(0, RawStatus.HEALTHY), (1, RawStatus.DEGRADED), (4, RawStatus.DEGRADED), (5, RawStatus.UNHEALTHY), (9, RawStatus.UNHEALTHY)],
)
def test_derive_raw_status(failures, expected):
    assert derive_raw_status(failures, 1, 5) == expected


@pytest.mark.asyncio
async def test_get_or_create_is_lazy_and_unique(session):
    repo = HealthRecordRepository(session)
    assert await repo.get("u1", "google-drive") is None

    first = await repo.get_or_create("u1", "google-drive")
    second = await repo.get_or_create("u1", "google-drive")

    assert first.id == second.id
    assert first.raw_status == RawStatus.HEALTHY
    assert first.consolidated_status is None
    assert await repo.count() == 1


@pytest.mark.asyncio
async def test_record_failure_increments_and_derives_status(session):
    repo = HealthRecordRepository(session)
    statuses = []
    for _ in range(5):
        record = await repo.record_failure(
            "u1",
            "google-drive",
            error_kind="network_error",
            error_message="Network issue",
            degraded_threshold=1,
            unhealthy_threshold=5,
        )
        statuses.append(RawStatus(record.raw_status))

    assert record.consecutive_failures == 5
    assert statuses == [RawStatus.DEGRADED] * 4 + [RawStatus.UNHEALTHY]
    assert record.last_error_kind == "network_error"


@pytest.mark.asyncio
async def test_thresholds_are_configurable(session):
    store = HealthRecordStore(session, degraded_threshold=2, unhealthy_threshold=3)
    classification = build_classification(ErrorKind.SERVICE_UNAVAILABLE, provider="amazon-s3")

    first = await store.record_failure("u1", "amazon-s3", classification)
    assert first.raw_status == RawStatus.HEALTHY
    second = await store.record_failure("u1", "amazon-s3", classification)
    assert second.raw_status == RawStatus.DEGRADED
    third = await store.record_failure("u1", "amazon-s3", classification)
    assert third.raw_status == RawStatus.UNHEALTHY


@pytest.mark.asyncio
async def test_explicit_zero_threshold_is_kept(session):
    store = HealthRecordStore(session, degraded_threshold=0)
    record = await store.get_or_create("u1", "amazon-s3")

    assert store.degraded_threshold == 0
    assert store.unhealthy_threshold == 5
    assert record.raw_status == RawStatus.HEALTHY
    first = await store.record_failure(
        "u1", "amazon-s3", build_classification(ErrorKind.NETWORK_ERROR, provider="amazon-s3")
    )
    assert first.raw_status == RawStatus.DEGRADED


@pytest.mark.asyncio
async def test_concurrent_failures_across_sessions_are_all_counted(file_session_factory):
    async with file_session_factory() as setup:
        await HealthRecordRepository(setup).get_or_create("u1", "google-drive")

    async def worker_failure():
        async with file_session_factory() as worker:
            record = await HealthRecordRepository(worker).record_failure(
                "u1", "google-drive", error_kind="network_error", error_message="x"
            )
            return record.consecutive_failures

    counts = await asyncio.gather(*(worker_failure() for _ in range(6)))

    async with file_session_factory() as check:
        record = await HealthRecordRepository(check).get("u1", "google-drive")
    assert sorted(counts) == [1, 2, 3, 4, 5, 6]
    assert record.consecutive_failures == 6
    assert record.raw_status == RawStatus.UNHEALTHY


@pytest.mark.asyncio
async def test_concurrent_token_refresh_failures_are_all_counted(file_session_factory):
    async with file_session_factory() as setup:
        await HealthRecordRepository(setup).get_or_create("u1", "google-drive")

    async def worker_refresh_failure():
        async with file_session_factory() as worker:
            return await HealthRecordRepository(worker).increment_token_refresh_failures("u1", "google-drive")

    counts = await asyncio.gather(*(worker_refresh_failure() for _ in range(4)))

    async with file_session_factory() as check:
        record = await HealthRecordRepository(check).get("u1", "google-drive")
    assert sorted(counts) == [1, 2, 3, 4]
    assert record.token_refresh_failures == 4


@pytest.mark.asyncio
async def test_failure_increment_ignores_stale_in_memory_state(session_factory):
    async with session_factory() as worker_a, session_factory() as worker_b:
        repo_a = HealthRecordRepository(worker_a)
        repo_b = HealthRecordRepository(worker_b)
        stale = await repo_a.get_or_create("u1", "google-drive")

        await repo_b.record_failure("u1", "google-drive", error_kind="network_error", error_message="x")
        record = await repo_a.record_failure("u1", "google-drive", error_kind="network_error", error_message="x")

        assert record.consecutive_failures == 2
        assert stale.consecutive_failures == 2


@pytest.mark.asyncio
async def test_success_resets_counters_regardless_of_history(session):
    repo = HealthRecordRepository(session)
    for _ in range(7):
        await repo.record_failure(
            "u1", "google-drive", error_kind="token_expired", error_message="expired", requires_reconnection=True
        )

    record = await repo.record_success("u1", "google-drive", provider_data={"quota_used": 10})

    assert record.consecutive_failures == 0
    assert record.raw_status == RawStatus.HEALTHY
    assert record.last_error_kind is None
    assert record.requires_reconnection is False
    assert record.provider_specific_data == {"quota_used": 10}
    assert Datetime.seconds_since(record.last_successful_operation_at) < 1


@pytest.mark.asyncio
async def test_token_refresh_counter(session):
    repo = HealthRecordRepository(session)
    assert await repo.increment_token_refresh_failures("u1", "google-drive") == 1
    assert await repo.increment_token_refresh_failures("u1", "google-drive") == 2

    await repo.reset_token_refresh_failures("u1", "google-drive")
    record = await repo.get("u1", "google-drive")

    assert record.token_refresh_failures == 0
    assert record.is_token_refresh_working()
    assert record.last_token_refresh_attempt_at is not None


@pytest.mark.asyncio
async def test_listing_and_cleanup(session):
    repo = HealthRecordRepository(session)
    await repo.update_fields("u1", "google-drive", consolidated_status=ConsolidatedStatus.CONNECTION_ISSUES)
    await repo.update_fields("u2", "google-drive", consolidated_status=ConsolidatedStatus.HEALTHY,
                             token_expires_at=Datetime.now() + timedelta(hours=2))
    await repo.update_fields("u3", "amazon-s3", consolidated_status=ConsolidatedStatus.NOT_CONNECTED)

    unhealthy = await repo.list_unhealthy()
    assert [r.user_id for r in unhealthy] == ["u1"]
    assert await repo.list_unhealthy("amazon-s3") == []

    expiring = await repo.list_expiring_tokens(within=timedelta(hours=24))
    assert [r.user_id for r in expiring] == ["u2"]

    deleted = await repo.cleanup_stale(Datetime.now() + timedelta(seconds=1))
    assert deleted == 1
    assert await repo.get("u3", "amazon-s3") is None
    assert await repo.get("u1", "google-drive") is not None


@pytest.mark.asyncio
async def test_disconnect_removes_record_and_credential(session, add_credential):
    await add_credential("u1", "google-drive")
    store = HealthRecordStore(session)
    await store.get_or_create("u1", "google-drive")

    assert await store.disconnect("u1", "google-drive") is True
    assert await store.get("u1", "google-drive") is None


def test_model_helpers():
    record = HealthRecord(
        user_id="u1",
        provider="google-drive",
        raw_status=RawStatus.DEGRADED,
        consolidated_status=ConsolidatedStatus.AUTHENTICATION_REQUIRED,
        token_refresh_failures=2,
        token_expires_at=Datetime.now() - timedelta(minutes=1),
    )
    assert record.is_degraded()
    assert not record.is_healthy()
    assert record.is_token_expired()
    assert not record.is_token_expiring_soon(24)
    assert not record.is_token_refresh_working()
    assert record.status_message() == "Authentication required - please reconnect"
