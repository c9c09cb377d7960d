"""
Backup level scheduling and tiered retention.

Decides whether a backup is due for a timestamp and at which level, keeps a
ledger of the last execution per level so a level never runs twice in the
same minute, and maintains the five retention tiers by promoting the oldest
artifact of each full tier into the next coarser tier before pruning.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union


logger = logging.getLogger(__name__)
DEFAULT_ARTIFACT_SUFFIX = ".vhdx"
LEDGER_KEY = "last_executions"


class BackupLevel(str, Enum):
    MINUTES_30 = "30m"
    HOURS_3 = "3h"
    HOURS_6 = "6h"
    HOURS_12 = "12h"
    DAILY = "1d"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, name: str) -> "BackupLevel":
        try:
            return cls(name.strip())
        except ValueError as error:
            choices = ", ".join(level.value for level in cls)
            raise ValueError(
                f"Unknown backup level {name!r}; expected one of {choices}."
            ) from error


# Finest to coarsest. Promotion walks this chain; 1d is terminal.
LEVEL_ORDER: Tuple[BackupLevel, ...] = tuple(BackupLevel)


class RotationError(Exception):
    """Base class for scheduling and retention failures."""


class LedgerError(RotationError):
    """Raised when the execution ledger cannot be used."""


class LedgerReadError(LedgerError):
    """Raised when a persisted ledger exists but cannot be parsed."""


class LedgerWriteError(LedgerError):
    """Raised when the ledger cannot be written."""


class DirectoryAccessError(RotationError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cannot access tier directory {path}: {reason}")
        self.path = path


class ArtifactError(RotationError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path


class ArtifactMoveError(ArtifactError):
    pass


class ArtifactDeleteError(ArtifactError):
    pass


@dataclass(frozen=True)
class TierPolicy:
    keep: int
    directory: Path


@dataclass
class RetentionConfig:
    tiers: Dict[BackupLevel, TierPolicy]
    last_execution_file: Optional[Path] = None
    artifact_suffix: str = DEFAULT_ARTIFACT_SUFFIX

    def __post_init__(self) -> None:
        missing = [level.value for level in LEVEL_ORDER if level not in self.tiers]
        if missing:
            raise ValueError(f"Missing tier policy for level(s): {', '.join(missing)}")
        for level, policy in self.tiers.items():
            if policy.keep <= 0:
                raise ValueError(f"Keep count for {level} must be a positive integer.")

    def policy(self, level: BackupLevel) -> TierPolicy:
        return self.tiers[level]


@dataclass(frozen=True)
class Promotion:
    name: str
    source: BackupLevel
    destination: BackupLevel
    # True when the destination already held the name and the source was dropped.
    collided: bool = False


def classify(timestamp: datetime) -> Tuple[bool, Optional[BackupLevel]]:
    """Map a timestamp to the single backup level due at that minute.

    Levels are checked from the longest interval to the shortest and the
    first match wins, so 00:00 is a daily backup and never also a 12h, 6h,
    3h or 30m one. Seconds are ignored.
    """
    hour, minute = timestamp.hour, timestamp.minute

    if hour == 0 and minute == 0:
        return True, BackupLevel.DAILY
    if hour in (0, 12) and minute == 0:
        return True, BackupLevel.HOURS_12
    if hour % 6 == 0 and minute == 0:
        return True, BackupLevel.HOURS_6
    if hour % 3 == 0 and minute == 0:
        return True, BackupLevel.HOURS_3
    if minute in (0, 30):
        return True, BackupLevel.MINUTES_30
    return False, None


def truncate_to_minute(timestamp: datetime) -> datetime:
    return timestamp.replace(second=0, microsecond=0)


class ExecutionLedger:
    """Last execution time per backup level, persisted as JSON.

    A ledger without a path is disabled: it always reads as empty and
    recording is a no-op.
    """

    def __init__(self, path: Union[Path, str, None]) -> None:
        self.path = Path(path) if path else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def load(self) -> Dict[BackupLevel, datetime]:
        if self.path is None:
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as error:
            raise LedgerReadError(f"Cannot read ledger {self.path}: {error}") from error
        return self._decode(text)

    def _decode(self, text: str) -> Dict[BackupLevel, datetime]:
        try:
            document = json.loads(text)
        except ValueError as error:
            raise LedgerReadError(f"Ledger {self.path} is not valid JSON: {error}") from error

        if not isinstance(document, dict):
            raise LedgerReadError(f"Ledger {self.path} must contain a JSON object.")

        raw_entries = document.get(LEDGER_KEY, {})
        if not isinstance(raw_entries, dict):
            raise LedgerReadError(f"Ledger {self.path} field '{LEDGER_KEY}' must be an object.")

        entries: Dict[BackupLevel, datetime] = {}
        for name, value in raw_entries.items():
            try:
                level = BackupLevel.parse(name)
                entries[level] = datetime.fromisoformat(value)
            except (TypeError, ValueError) as error:
                raise LedgerReadError(
                    f"Ledger {self.path} has an invalid entry {name!r}: {error}"
                ) from error
        return entries

    def save(self, entries: Dict[BackupLevel, datetime]) -> None:
        if self.path is None:
            return
        document = {
            LEDGER_KEY: {
                level.value: entries[level].isoformat()
                for level in LEVEL_ORDER
                if level in entries
            }
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
        except OSError as error:
            raise LedgerWriteError(f"Cannot write ledger {self.path}: {error}") from error

    def last_execution(self, level: BackupLevel) -> Optional[datetime]:
        return self.load().get(level)

    def record_execution(self, level: BackupLevel, timestamp: datetime) -> None:
        if self.path is None:
            return
        entries = self.load()
        entries[level] = timestamp
        self.save(entries)


def should_execute(
    config: RetentionConfig,
    timestamp: datetime,
    *,
    log: Optional[logging.Logger] = None,
) -> Tuple[bool, Optional[BackupLevel]]:
    log = log or logger

    due, level = classify(timestamp)
    if not due or level is None:
        log.debug("No backup level due at %s.", timestamp.strftime("%H:%M"))
        return False, None

    ledger = ExecutionLedger(config.last_execution_file)
    if not ledger.enabled:
        log.debug("Execution ledger disabled; %s backup allowed.", level)
        return True, level

    last = ledger.last_execution(level)
    if last is None:
        log.info("No previous %s backup recorded.", level)
        return True, level

    if truncate_to_minute(timestamp) == truncate_to_minute(last):
        log.info(
            "Skipping duplicate %s backup; already ran at %s.",
            level,
            last.isoformat(sep=" ", timespec="seconds"),
        )
        return False, None

    log.debug("Last %s backup ran at %s.", level, last.isoformat(sep=" ", timespec="seconds"))
    return True, level


def record_execution(
    config: RetentionConfig, level: BackupLevel, timestamp: datetime
) -> None:
    ExecutionLedger(config.last_execution_file).record_execution(level, timestamp)


def list_artifacts(directory: Path, suffix: str) -> List[Path]:
    """Return the tier's artifacts oldest first.

    Names start with a zero-padded sequence number, so name order is
    creation order.
    """
    try:
        candidates = [
            entry
            for entry in directory.iterdir()
            if entry.name.endswith(suffix) and entry.is_file()
        ]
    except OSError as error:
        raise DirectoryAccessError(directory, str(error)) from error
    return sorted(candidates, key=lambda entry: entry.name)


def _path_exists(path: Path) -> bool:
    # Path.exists() raises instead of returning False when a parent denies access.
    try:
        return path.exists()
    except OSError as error:
        raise DirectoryAccessError(path, str(error)) from error


def _ensure_directory(directory: Path) -> None:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise DirectoryAccessError(directory, str(error)) from error


def _delete_artifact(path: Path) -> None:
    try:
        path.unlink()
    except OSError as error:
        raise ArtifactDeleteError(path, str(error)) from error


def _move_artifact(source: Path, destination: Path) -> None:
    try:
        source.rename(destination)
    except OSError as error:
        raise ArtifactMoveError(source, f"cannot move to {destination}: {error}") from error


def _with_pending_promotions(
    artifacts: List[Path],
    level: BackupLevel,
    directory: Path,
    promotions: Sequence[Promotion],
) -> List[Path]:
    """Listing of a tier as it would look after the given dry-run promotions."""
    outgoing = {promotion.name for promotion in promotions if promotion.source == level}
    incoming = [
        directory / promotion.name
        for promotion in promotions
        if promotion.destination == level and not promotion.collided
    ]
    listing = [artifact for artifact in artifacts + incoming if artifact.name not in outgoing]
    return sorted(listing, key=lambda entry: entry.name)


def rotate(
    config: RetentionConfig,
    level: BackupLevel,
    *,
    dry_run: bool = False,
    promotions: Sequence[Promotion] = (),
    log: Optional[logging.Logger] = None,
) -> List[Path]:
    """Delete the oldest artifacts of a tier beyond its keep count.

    Returns the artifacts deleted, or that would be deleted in dry-run mode.
    In dry-run mode the tier is counted as if ``promotions`` had already been
    carried out; a real run sees them on disk.
    Raises DirectoryAccessError when the tier directory cannot be checked,
    created or listed; individual delete failures are logged and skipped.
    """
    log = log or logger
    policy = config.policy(level)
    directory = policy.directory

    if _path_exists(directory):
        artifacts = list_artifacts(directory, config.artifact_suffix)
    elif dry_run:
        log.info("Tier %s directory %s does not exist yet.", level, directory)
        artifacts = []
    else:
        _ensure_directory(directory)
        artifacts = list_artifacts(directory, config.artifact_suffix)

    if dry_run:
        artifacts = _with_pending_promotions(artifacts, level, directory, promotions)

    surplus = len(artifacts) - policy.keep
    if surplus <= 0:
        log.debug(
            "Tier %s holds %d of %d artifact(s); nothing to delete.",
            level,
            len(artifacts),
            policy.keep,
        )
        return []

    action = "Would delete" if dry_run else "Deleting"
    deleted: List[Path] = []
    for artifact in artifacts[:surplus]:
        log.info("%s %s from tier %s (keep %d).", action, artifact.name, level, policy.keep)
        if dry_run:
            deleted.append(artifact)
            continue
        try:
            _delete_artifact(artifact)
        except ArtifactDeleteError as error:
            log.error("Failed to delete artifact %s", error)
            continue
        deleted.append(artifact)
    return deleted


def promote(
    config: RetentionConfig,
    ordered_levels: Sequence[BackupLevel] = LEVEL_ORDER,
    *,
    dry_run: bool = False,
    log: Optional[logging.Logger] = None,
) -> List[Promotion]:
    """Move the oldest artifact of every full tier into the next tier.

    A tier is full when it holds at least its keep count. When the next tier
    already has an artifact of the same name, the source copy is deleted
    instead. Failures are logged per tier pair and never raised.
    """
    log = log or logger
    promotions: List[Promotion] = []

    for current, following in zip(ordered_levels, ordered_levels[1:]):
        current_dir = config.policy(current).directory
        keep = config.policy(current).keep
        next_dir = config.policy(following).directory

        try:
            if not dry_run:
                _ensure_directory(next_dir)
            if _path_exists(current_dir):
                artifacts = list_artifacts(current_dir, config.artifact_suffix)
            else:
                log.debug("Tier %s directory %s does not exist yet.", current, current_dir)
                artifacts = []
        except (DirectoryAccessError, OSError) as error:
            log.error("Skipping promotion %s -> %s: %s", current, following, error)
            continue

        if dry_run:
            # Earlier pairs of this sweep may already have moved one in.
            artifacts = _with_pending_promotions(artifacts, current, current_dir, promotions)

        if len(artifacts) < keep:
            log.debug(
                "Tier %s holds %d of %d artifact(s); no promotion.",
                current,
                len(artifacts),
                keep,
            )
            continue

        oldest = artifacts[0]
        destination = next_dir / oldest.name
        try:
            collided = _path_exists(destination)
        except (DirectoryAccessError, OSError) as error:
            log.error("Skipping promotion %s -> %s: %s", current, following, error)
            continue

        if dry_run:
            if collided:
                log.info("Would delete %s from tier %s; tier %s already has it.", oldest.name, current, following)
            else:
                log.info("Would promote %s from tier %s to %s.", oldest.name, current, following)
            promotions.append(Promotion(oldest.name, current, following, collided))
            continue

        try:
            if collided:
                log.warning(
                    "Tier %s already has %s; deleting the copy in tier %s.",
                    following,
                    oldest.name,
                    current,
                )
                _delete_artifact(oldest)
            else:
                _move_artifact(oldest, destination)
                log.info("Promoted %s from tier %s to %s.", oldest.name, current, following)
        except ArtifactError as error:
            log.error("Promotion %s -> %s failed: %s", current, following, error)
            continue

        promotions.append(Promotion(oldest.name, current, following, collided))

    return promotions


def apply_retention(
    config: RetentionConfig,
    *,
    dry_run: bool = False,
    log: Optional[logging.Logger] = None,
) -> Tuple[List[Promotion], Dict[BackupLevel, List[Path]]]:
    """Promote across the whole tier chain, then prune every tier.

    Promotion must finish for all tiers before any tier is pruned, otherwise
    an artifact due for promotion could be deleted first. A dry run prunes
    against the promotions it would have made, so it reports the same
    deletions as the real run.
    """
    log = log or logger
    promotions = promote(config, LEVEL_ORDER, dry_run=dry_run, log=log)

    deletions: Dict[BackupLevel, List[Path]] = {}
    for level in LEVEL_ORDER:
        try:
            deletions[level] = rotate(
                config, level, dry_run=dry_run, promotions=promotions, log=log
            )
        except DirectoryAccessError as error:
            log.error("Skipping rotation of tier %s: %s", level, error)
            deletions[level] = []
    return promotions, deletions
