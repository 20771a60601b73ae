# backupservice

`backupservice` is a library that runs backup routines on a schedule and
restores data from the backups they produce. It does the bookkeeping around
backups: where each backup is stored, the metadata written next to it, and
which backups a restore to a given point in time needs. The work of reading
from and writing to a database cluster is delegated to objects that you
supply.

## Installation

```
pip install .
```

Install the test extra to run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `backupservice.models`: the shared data types. `BackupRoutine` holds the
  source cluster (`AerospikeCluster`), the storage, the namespaces, the
  `BackupPolicy` and the cron expressions for full and incremental backups.
  `BackupMetadata` serialises to YAML with `to_yaml()` and is read back with
  `metadata_from_yaml()`. `TimeBounds` is a range with an inclusive start and
  an exclusive end; `time_bounds_to()` and `time_bounds_from()` build
  half-open ranges. `BackupHandler`, `RestoreHandler` and `BackupListReader`
  are protocols describing running jobs and backup listings.
- `backupservice.storage`: `read_file`, `read_files`, `write_file` and
  `delete_folder` work with any storage that has a registered accessor
  (`register_accessor`, `get_accessor`). An accessor for the local file
  system (`LocalStorage`, `LocalStorageAccessor`) is registered on import.
  `NameValidator` keeps only paths that end with a given suffix.
- `backupservice.paths`: the folder layout. Folder names use milliseconds
  since the epoch (`format_time`); helpers give full and incremental backup
  folders, configuration file paths and backup keys.
- `backupservice.backend`: `BackupBackend` lists the full and incremental
  backups of one routine, finds the last full backup before a moment
  (raising `BackupNotFoundError` when there is none), finds the incremental
  backups of a namespace oldest first, and packs stored cluster
  configuration files into a zip archive. `backend_for_routine` builds the
  backend of a configured routine, and `BackendsHolder` keeps one per
  routine.
- `backupservice.routine_handler`: `BackupRoutineHandler` runs full and
  incremental backups of every namespace, writes their metadata, deletes
  empty incremental folders and retries failed full backups through
  `backupservice.retry.RetryService`. `current_stat()` reports the progress
  of running backups.
- `backupservice.scheduler`: `CronTrigger` (cron with a leading seconds
  field, an optional year field, and descriptors such as `@daily`),
  `RunOnceTrigger`, `BackupJob`, a thread-based `Scheduler`, and
  `schedule_routines`, which registers every routine.
  `need_to_run_full_backup_now` decides whether a full backup is due at
  start-up; `new_adhoc_full_backup_job` returns a fresh ad-hoc key with a
  routine's full backup job.
- `backupservice.config_applier`: `ConfigApplier.apply_new_config()` removes
  the jobs in the scheduled group, rebuilds backends and handlers with
  `make_handlers`, and schedules every routine again. Ad-hoc jobs stay.
- `backupservice.client_manager`: `ClientManager` hands out one shared
  `BackupClient` per cluster, counts its users and closes it when the last
  one releases it.
- `backupservice.restore`: `RestoreManager` restores from a path, or to a
  point in time by combining the last full backup with the incremental
  backups that follow it. Jobs run in background threads; their progress is
  kept in `backupservice.jobs.RestoreJobsHolder` and reported by
  `job_status()`. `retrieve_configuration()` returns the cluster
  configuration saved with a full backup as a zip archive.
- `backupservice.estimates`: percentage done and estimated end time of
  running jobs.
- `backupservice.metrics`: in-memory `Counter`, `Gauge` and `LabeledGauge`,
  the service's metric instances, and a `MetricsCollector` that records the
  progress of running backups and restores at an interval.
- `backupservice.loading_cache` and `backupservice.util`: a cache that
  loads missing values on demand and is emptied periodically, and small
  helpers such as `parse_s3_path`.

## What you supply

- A client factory for `ClientManager`: a callable taking an
  `AerospikeCluster` and returning a connected database client with a
  `close()` method. Routine handlers also call its `info("namespaces")` when
  no namespaces are configured, and `cluster_configuration()` to save the
  configuration of the cluster after a full backup.
- A backup service with a `backup_run(routine, policy, client, storage,
  secret_agent, bounds, namespace, path)` method returning a
  `BackupHandler`.
- A restore service with a `run(client, request)` method returning a
  `RestoreHandler`.

## Example

```python
from datetime import datetime, timezone

from backupservice.backend import BackupBackend
from backupservice.models import BackupMetadata, time_bounds_to
from backupservice.storage import LocalStorage

storage = LocalStorage(path="/var/backups")
backend = BackupBackend(storage, "daily/backup", "daily/incremental", False)

created = datetime(2024, 1, 1, tzinfo=timezone.utc)
backend.write_backup_metadata(
    "daily/backup/1704067200000/data/test",
    BackupMetadata(created=created, namespace="test"),
)

for details in backend.full_backup_list(time_bounds_to(datetime.now(timezone.utc))):
    print(details.key, details.namespace)
```

## What the package does not do

- It does not read records from or write records to a database; that is
  the job of the backup and restore services you supply.
- Only local file-system storage is built in. Object stores need an
  accessor of your own, registered with `register_accessor`.
- It has no command-line program and no HTTP API.
- Metrics are kept in memory; nothing exports them.