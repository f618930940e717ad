"""
Sync pipeline components for ERP extraction and reconciliation.

Modules:
    base: Abstract base class for sync jobs with run tracking and cursors
    runner: Orchestrator recording one sync_runs row per execution
    fanout: Bounded-concurrency per-entity fan-out

Subpackages:
    remote: NetSuite access (credentials, backoff, SuiteQL, file streaming)
    extractors: One sync job per synced table family
    transformers: Row normalization into typed records
    loaders: Reconciliation engine (upsert, scoped soft-delete)

Architecture:
    Every job follows the same three phases:

    1. Extract - SuiteQL queries or paginated export files, with backoff
    2. Transform - Normalize rows into validated records
    3. Load - Reconcile into the store, snapshot-replace or incremental

Usage:
    from ingestion.extractors.eta_extractor import EtaSyncJob
    from ingestion.runner import SyncRunner

Example:
    job = EtaSyncJob(db_session=session, client=netsuite, dry_run=True)
    result = await SyncRunner(session).run(job)

    print(result["counts"])

Error Handling:
    Every failure is an ETLException subclass from core.exceptions with a
    stable error kind and HTTP status; the runner records it on the run.
"""

__all__ = [
    "SyncJob",
    "SyncRunner",
    "fan_out",
    "PostgresLoader",
    "RecordNormalizer",
    "NetSuiteClient",
]
