from ingest_hub.repositories.data_records import InMemoryDataRecordsRepository, PostgresDataRecordsRepository
from ingest_hub.repositories.ingest_jobs import InMemoryIngestJobsRepository, PostgresIngestJobsRepository

__all__ = [
    "InMemoryDataRecordsRepository",
    "PostgresDataRecordsRepository",
    "InMemoryIngestJobsRepository",
    "PostgresIngestJobsRepository",
]
