"""Layout of backup files within a storage."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from backupservice.models import BackupMetadata

METADATA_FILE = "metadata.yaml"
CONFIG_EXT = ".conf"
DATA_DIRECTORY = "data"
CONFIGURATION_BACKUP_DIRECTORY = "configuration"
FULL_BACKUP_DIRECTORY = "backup"
INCREMENTAL_BACKUP_DIRECTORY = "incremental"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _unix_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def format_time(moment: datetime) -> str:
    """Milliseconds since the epoch, as used in folder names."""
    return str(_unix_millis(moment))


def full_path(full_backups_path: str, remove_full_backup: bool, namespace: str,
              moment: datetime) -> str:
    """Folder holding the full backup data of ``namespace``."""
    if remove_full_backup:
        return f"{full_backups_path}/{DATA_DIRECTORY}/{namespace}"
    return f"{full_backups_path}/{format_time(moment)}/{DATA_DIRECTORY}/{namespace}"


def incremental_path(incremental_backups_path: str, moment: datetime) -> str:
    """Folder of the incremental backup taken at ``moment``."""
    return f"{incremental_backups_path}/{format_time(moment)}"


def incremental_path_for_namespace(incremental_backups_path: str, namespace: str,
                                   moment: datetime) -> str:
    """Folder holding incremental backup data of ``namespace``."""
    return (f"{incremental_path(incremental_backups_path, moment)}"
            f"/{DATA_DIRECTORY}/{namespace}")


def config_file_name(index: int) -> str:
    """Name of the ``index``-th cluster configuration file."""
    return f"aerospike_{index}{CONFIG_EXT}"


def configuration_file(full_backups_path: str, remove_full_backup: bool, moment: datetime,
                       index: int) -> str:
    """Path of a cluster configuration file saved alongside a full backup."""
    if remove_full_backup:
        folder = f"{full_backups_path}/{CONFIGURATION_BACKUP_DIRECTORY}"
    else:
        folder = f"{full_backups_path}/{format_time(moment)}/{CONFIGURATION_BACKUP_DIRECTORY}"
    return f"{folder}/{config_file_name(index)}"


def backup_key(path: str, metadata: BackupMetadata, no_timestamp_in_path: bool) -> str:
    """Storage key of the data described by ``metadata``."""
    if no_timestamp_in_path:
        return f"{path}/{DATA_DIRECTORY}/{metadata.namespace}"
    return f"{path}/{format_time(metadata.created)}/{DATA_DIRECTORY}/{metadata.namespace}"