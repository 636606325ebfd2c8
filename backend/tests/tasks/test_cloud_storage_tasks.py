from datetime import timedelta

import pytest

from filedrop.core.celery_app import celery_app
from filedrop.core.config import settings
from filedrop.models import ConsolidatedStatus
from filedrop.services.cloud_storage.errors import CloudStorageError
from filedrop.services.cloud_storage.health_store import HealthRecordStore
from filedrop.services.cloud_storage.retry_controller import RUN_OPERATION_TASK, CeleryJobQueue, StorageOperation
from filedrop.tasks import cloud_storage as tasks
from filedrop.utils.time_utils import Datetime

USER = "user-1"
PROVIDER = "google-drive"


@pytest.fixture
def sent_tasks(monkeypatch):
    sent = []

    def fake_send_task(name, args=None, kwargs=None, **options):
        sent.append({"name": name, "args": args, **options})

    monkeypatch.setattr(celery_app, "send_task", fake_send_task)
    return sent


@pytest.fixture
def drive_client(make_client):
    return make_client(PROVIDER)


@pytest.fixture
def wired(monkeypatch, session_factory, make_registry, drive_client, sent_tasks):
    registry = make_registry({PROVIDER: True}, default=PROVIDER, clients={PROVIDER: drive_client})
    monkeypatch.setattr(tasks, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(tasks, "get_provider_registry", lambda: registry)
    return registry


def _operation_dict() -> dict:
    return StorageOperation(user_id=USER, provider=PROVIDER, kind="upload_file").to_dict()


@pytest.mark.asyncio
async def test_run_operation_success(wired, drive_client, sent_tasks):
    drive_client.operation_results = [{"file_id": "abc"}]

    summary = await tasks._run_operation(_operation_dict())

    assert summary == {"status": "success", "attempt": 1}
    assert drive_client.operation_calls == 1
    assert sent_tasks == []


@pytest.mark.asyncio
async def test_run_operation_failure_requeues_with_countdown(wired, drive_client, sent_tasks):
    drive_client.operation_results = [CloudStorageError("Backend Error", status_code=503)]

    summary = await tasks._run_operation(_operation_dict())

    assert summary == {"status": "retry", "delay_ms": settings.RETRY_BASE_DELAY_MS, "next_attempt": 2}
    assert len(sent_tasks) == 1
    sent = sent_tasks[0]
    assert sent["name"] == RUN_OPERATION_TASK
    assert sent["countdown"] == settings.RETRY_BASE_DELAY_MS / 1000
    assert sent["queue"] == settings.CELERY_RETRY_QUEUE
    assert sent["args"][0]["retry_state"]["attempt"] == 2
    assert sent["args"][0]["retry_state"]["last_error_kind"] == "service_unavailable"


@pytest.mark.asyncio
async def test_run_operation_non_retryable_fails(wired, drive_client, sent_tasks):
    drive_client.operation_results = [CloudStorageError("Insufficient Permission", status_code=403)]

    summary = await tasks._run_operation(_operation_dict())

    assert summary == {"status": "failed", "error_kind": "insufficient_permissions", "attempt": 1}
    assert sent_tasks == []


@pytest.mark.asyncio
async def test_check_connection_bypasses_cached_results(wired, drive_client, add_credential):
    await add_credential(USER, PROVIDER)

    assert await tasks._check_connection(USER, PROVIDER) == "healthy"
    assert await tasks._check_connection(USER, PROVIDER) == "healthy"
    assert drive_client.probe_calls == 2


@pytest.mark.asyncio
async def test_sweep_evaluates_known_providers_only(wired, add_credential):
    await add_credential(USER, PROVIDER)
    await add_credential("user-2", PROVIDER, expires_in=timedelta(hours=-1), refresh_token=None)
    await add_credential(USER, "dropbox")

    counts = await tasks._sweep()

    assert counts == {"healthy": 1, "authentication_required": 1}


@pytest.mark.asyncio
async def test_cleanup_removes_old_disconnected_records(wired, session):
    store = HealthRecordStore(session)
    old = Datetime.now() - timedelta(days=settings.HEALTH_RECORD_RETENTION_DAYS + 1)
    await store.update_fields("user-old", PROVIDER, consolidated_status=ConsolidatedStatus.NOT_CONNECTED, updated_at=old)
    await store.update_fields("user-new", PROVIDER, consolidated_status=ConsolidatedStatus.NOT_CONNECTED)

    assert await tasks._cleanup() == 1
    assert await store.get("user-new", PROVIDER) is not None


def test_celery_job_queue_uses_countdown_seconds(sent_tasks):
    operation = StorageOperation(user_id=USER, provider=PROVIDER, kind="upload_file")

    CeleryJobQueue(queue="cloud-retry").enqueue(operation, 2500)

    assert sent_tasks == [
        {"name": RUN_OPERATION_TASK, "args": [operation.to_dict()], "countdown": 2.5, "queue": "cloud-retry"}
    ]


def test_tasks_and_schedule_are_registered():
    assert RUN_OPERATION_TASK in celery_app.tasks
    assert "filedrop.tasks.cloud_storage.check_connection_health" in celery_app.tasks
    schedule = celery_app.conf.beat_schedule
    assert schedule["sweep-connection-health"]["task"] == "filedrop.tasks.cloud_storage.sweep_connection_health"
    assert schedule["cleanup-health-records-daily"]["task"] == "filedrop.tasks.cloud_storage.cleanup_health_records"
