"""
Snapshot data models.

Serialized field names (camelCase) are the wire format shared by the lock
document, the staging marker, the stager CONFIG payload and the hand-off
record. Python attributes use snake_case; both spellings are accepted on input.
"""

from datetime import datetime
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ...errors import MalformedDocumentError, SnapshotNotFoundError

# In-archive path of the optional post-restore manifest template
POST_RESTORE_ARCHIVE_PATH = "post-restore/manifests.yaml"

# Key of the staging marker inside the destination bucket
LOCAL_MARKER_KEY = "current.yaml"

DEFAULT_S3_HOST = "https://s3.amazonaws.com"


class SnapshotLockChannel:
    """Well-known release channels. Any string is a valid channel."""
    STABLE = "stable"
    RC = "rc"


class SnapshotTarget(BaseModel):
    """Generation parameters for a snapshot target."""
    deploy_apps: List[str] = Field(default_factory=list, alias="deployApps", description="Apps deployed before the capture command")
    post_deploy_apps: List[str] = Field(default_factory=list, alias="postDeployApps", description="Apps deployed after the capture command")
    command: str = Field(default="", description="Shell hook run against the cluster before the backup")
    post_restore: str = Field(default="", alias="postRestore", description="Local path of a post-restore manifest template")
    excluded_paths: List[str] = Field(default_factory=list, alias="excludedPaths", description="Local store key prefixes left out of the archive")

    class Config:
        populate_by_name = True


class SnapshotGenerateConfig(BaseModel):
    """Contents of a snapshot definitions file."""
    targets: Dict[str, SnapshotTarget] = Field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str) -> "SnapshotGenerateConfig":
        return _load_yaml(cls, text, "snapshot definitions")


class SnapshotLockListItem(BaseModel):
    """One published snapshot. Immutable once written to the lock document."""
    digest: str = Field(..., description="base64 MD5 of the uploaded archive")
    uri: str = Field(..., description="Object store key of the archive")
    config: SnapshotTarget = Field(default_factory=SnapshotTarget)
    backup_id: str = Field(..., alias="backupID", description="Name of the backup-system Backup")

    class Config:
        populate_by_name = True
        frozen = True

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, text: str) -> "SnapshotLockListItem":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise MalformedDocumentError(f"failed to parse snapshot item: {e}") from e


class SnapshotLockList(BaseModel):
    """Snapshots of a single target, keyed by channel, newest first."""
    snapshots: Dict[str, List[SnapshotLockListItem]] = Field(default_factory=dict)


class SnapshotLock(BaseModel):
    """The lock document mapping target/channel to published snapshots."""
    generated_at: Optional[datetime] = Field(default=None, alias="generatedAt")
    targets: Dict[str, SnapshotLockList] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    def latest(self, target: str, channel: str) -> SnapshotLockListItem:
        """
        Return the newest snapshot for target/channel.

        Raises:
            SnapshotNotFoundError: Unknown target, unknown channel, or no snapshots
        """
        if target not in self.targets:
            raise SnapshotNotFoundError(f"unknown snapshot target '{target}'")

        channels = self.targets[target].snapshots
        if channel not in channels:
            raise SnapshotNotFoundError(f"unknown snapshot channel '{channel}'")

        if not channels[channel]:
            raise SnapshotNotFoundError(f"no snapshots found for channel '{channel}'")

        # 0-index is the latest
        return channels[channel][0]

    def prepend(self, target: str, channel: str, item: SnapshotLockListItem) -> None:
        """Make item the latest snapshot of target/channel. Existing items are untouched."""
        lock_list = self.targets.setdefault(target, SnapshotLockList())
        existing = lock_list.snapshots.get(channel, [])
        lock_list.snapshots[channel] = [item] + existing

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json", by_alias=True), sort_keys=False)

    @classmethod
    def from_yaml(cls, text: str) -> "SnapshotLock":
        return _load_yaml(cls, text, "snapshot lock")


class LocalSnapshot(BaseModel):
    """Staging marker: digest of the snapshot currently extracted in the destination store."""
    digest: str

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(), sort_keys=False)

    @classmethod
    def from_yaml(cls, text: str) -> "LocalSnapshot":
        return _load_yaml(cls, text, "staging marker")


class S3Config(BaseModel):
    """Connection and selection parameters for one side of a staging transfer."""
    s3_host: str = Field(default=DEFAULT_S3_HOST, alias="s3Host")
    bucket: str = ""
    key: str = Field(default="", description="Pinned archive key; skips discovery when set")
    digest: str = Field(default="", description="Expected digest of a pinned archive")
    backup_id: str = Field(default="", alias="backupID", description="Backup name of a pinned archive")
    aws_access_key: str = Field(default="", alias="awsAccessKey")
    aws_secret_key: str = Field(default="", alias="awsSecretKey")
    aws_session_token: str = Field(default="", alias="awsSessionToken")
    region: str = ""
    snapshot_target: str = Field(default="", alias="snapshotTarget")
    snapshot_channel: str = Field(default="", alias="snapshotChannel")

    class Config:
        populate_by_name = True

    @property
    def endpoint_url(self) -> str:
        """Endpoint URL with an explicit scheme; hosts without one are plain HTTP."""
        host = self.s3_host or DEFAULT_S3_HOST
        if host.startswith("https://") or host.startswith("http://"):
            return host
        return f"http://{host}"


class StagerConfig(BaseModel):
    """Payload of the staging job's CONFIG environment variable."""
    source: S3Config = Field(default_factory=S3Config)
    dest: S3Config = Field(default_factory=S3Config)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, text: str) -> "StagerConfig":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise MalformedDocumentError(f"failed to parse stager config: {e}") from e


class SnapshotHandoff(BaseModel):
    """Decoded hand-off record left by the stager for the restore orchestrator."""
    snapshot: SnapshotLockListItem
    post_restore: Optional[str] = Field(default=None, description="base64 of the gzip-compressed manifest template")


def _load_yaml(model, text: str, what: str):
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDocumentError(f"failed to parse {what}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedDocumentError(f"failed to parse {what}: expected a mapping")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedDocumentError(f"failed to parse {what}: {e}") from e
