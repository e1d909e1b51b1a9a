from __future__ import annotations

from ingest_hub.dispatcher import DispatcherSettings, IngestionService
from ingest_hub.repositories import InMemoryDataRecordsRepository, InMemoryIngestJobsRepository
from ingest_hub.worker_runtime import WorkerRuntime, create_worker_runtime_from_env


class FakeService:
    def __init__(self, *, fail_for: set[str] | None = None):
        self.calls: list[str | None] = []
        self.recover_calls: list[int] = []
        self.fail_for = fail_for or set()

    def process_queued_jobs(self, environment=None):
        self.calls.append(environment)
        if environment in self.fail_for:
            raise RuntimeError("database unavailable")
        return {"environments": [environment] if environment else [], "processed": 1, "vectorized": 1}

    def recover_stale_jobs(self, older_than_minutes=10):
        self.recover_calls.append(older_than_minutes)
        return ["stale-1"]


def test_worker_runtime_drives_all_environments_by_default():
    service = FakeService()
    rt = WorkerRuntime(service=service, stale_after_minutes=15)

    result = rt.run_once()

    assert service.calls == [None]
    assert service.recover_calls == [15]
    assert result == {"rounds": 1, "processed": 1, "vectorized": 1, "failed_rounds": 0, "recovered": 1}


def test_worker_runtime_keeps_going_when_one_environment_fails():
    service = FakeService(fail_for={"env_b"})
    rt = WorkerRuntime(service=service, environments=["env_a", "env_b", "env_c"], stale_after_minutes=0)

    result = rt.run_once()

    assert service.calls == ["env_a", "env_b", "env_c"]
    assert service.recover_calls == []
    assert result["rounds"] == 3
    assert result["failed_rounds"] == 1
    assert result["processed"] == 2


def test_worker_runtime_run_forever_aggregates_iterations():
    service = FakeService()
    rt = WorkerRuntime(service=service, poll_interval_ms=1)

    result = rt.run_forever(stop_after_iterations=3)

    assert result["rounds"] == 3
    assert result["processed"] == 3
    assert result["recovered"] == 3


def test_worker_runtime_processes_real_queue():
    jobs = InMemoryIngestJobsRepository()

    class Embedder:
        def embed(self, texts):
            return [[1.0, 0.0] for _ in texts]

    service = IngestionService(
        jobs=jobs,
        records=InMemoryDataRecordsRepository(),
        embedder=Embedder(),
        settings=DispatcherSettings(background_enabled=False),
    )
    job_a = service.start_background_ingest("CSV", "prompt\nfirst environment row\n", {"environment": "env_a"})
    job_b = service.start_background_ingest("CSV", "prompt\nsecond environment row\n", {"environment": "env_b"})

    result = WorkerRuntime(service=service).run_once()

    assert result["processed"] == 2
    assert result["vectorized"] == 2
    assert jobs.get(job_id=job_a)["status"] == "COMPLETED"
    assert jobs.get(job_id=job_b)["status"] == "COMPLETED"


def test_worker_runtime_reads_config_from_env():
    rt = create_worker_runtime_from_env(
        service=FakeService(),
        environ={
            "WORKER_ENVIRONMENTS": "env_a, ,env_b",
            "WORKER_POLL_INTERVAL_MS": "250",
            "WORKER_STALE_AFTER_MINUTES": "0",
        },
    )
    assert rt.environments == ["env_a", "env_b"]
    assert rt.poll_interval_ms == 250
    assert rt.stale_after_minutes == 0

    defaults = create_worker_runtime_from_env(service=FakeService(), environ={"WORKER_POLL_INTERVAL_MS": "x"})
    assert defaults.environments == []
    assert defaults.poll_interval_ms == 1000
    assert defaults.stale_after_minutes == 10
