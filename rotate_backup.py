#!/usr/bin/env python3
"""
Tiered disk-image backup rotation.

Checks the clock against the backup schedule, and when a level is due
promotes and prunes the retention tiers and saves a fresh copy of the source
disk image into the 30 minute tier. Runs once or keeps polling.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from rotation import (
    DEFAULT_ARTIFACT_SUFFIX,
    LEVEL_ORDER,
    BackupLevel,
    LedgerError,
    RetentionConfig,
    TierPolicy,
    apply_retention,
    record_execution,
    should_execute,
)


ARTIFACT_TIMESTAMP_FORMAT = "%Y%m%d_%H%M"
CONFIG_SECTION = "backup"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_POLL_INTERVAL = 30
SEQUENCE_WIDTH = 6
TIER_FIELDS = ("keep", "dir")

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class LockConflictError(Exception):
    """Raised when another backup cycle holds the lock file."""


@dataclass
class BackupConfig:
    retention: RetentionConfig
    source_image: Path
    last_id_file: Optional[Path] = None
    perf_log_path: Optional[Path] = None
    log_file: Optional[Path] = None
    enable_lock: bool = False
    lock_file_path: Optional[Path] = None
    loop: bool = False
    poll_interval: int = DEFAULT_POLL_INTERVAL
    dry_run: bool = False


@dataclass
class CycleTimings:
    started: datetime
    save_seconds: float = 0.0
    retention_seconds: float = 0.0
    total_seconds: float = 0.0


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Rotate tiered backups of a disk image on a 30 minute schedule."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing backup parameters.",
    )
    parser.add_argument(
        "--init-config",
        type=Path,
        metavar="PATH",
        help="Write a commented config template to PATH and exit.",
    )
    parser.add_argument(
        "--source-image",
        type=Path,
        help="Disk image copied into the 30m tier on every backup.",
    )
    parser.add_argument(
        "--last-execution-file",
        type=Path,
        help="JSON file recording the last run per level (duplicate-run guard).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write log output to this file.",
    )
    parser.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="Show planned actions without copying, moving or deleting files.",
    )
    parser.add_argument(
        "--no-dry-run",
        dest="dry_run",
        action="store_false",
        help=argparse.SUPPRESS,
    )
    parser.set_defaults(dry_run=None)
    parser.add_argument(
        "--loop",
        dest="loop",
        action="store_true",
        help="Run continuously, checking the schedule at a set interval.",
    )
    parser.add_argument(
        "--no-loop",
        dest="loop",
        action="store_false",
        help=argparse.SUPPRESS,
    )
    parser.set_defaults(loop=None)
    parser.add_argument(
        "--poll-interval",
        type=int,
        help=f"Seconds between checks when running in loop mode (default: {DEFAULT_POLL_INTERVAL}).",
    )
    parser.add_argument(
        "--pid-file",
        type=Path,
        help="Write the process id to this file while running in loop mode.",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> BackupConfig:
    file_cfg = file_config or {}

    source_value = args.source_image or file_cfg.get("source_image")
    if not source_value:
        raise ConfigurationError("source_image must be supplied via CLI or config file.")

    last_execution_value = (
        args.last_execution_file
        if args.last_execution_file is not None
        else file_cfg.get("last_execution_file")
    )
    log_file_value = args.log_file if args.log_file is not None else file_cfg.get("log_file")

    if args.dry_run is not None:
        dry_run = args.dry_run
    else:
        dry_run = parse_bool(file_cfg.get("dry_run", "false"))

    if args.loop is not None:
        loop = args.loop
    else:
        loop = parse_bool(file_cfg.get("loop", "false"))

    poll_value: int
    if args.poll_interval is not None:
        poll_value = args.poll_interval
    elif "poll_interval" in file_cfg:
        poll_value = parse_int(file_cfg["poll_interval"], "poll_interval")
    else:
        poll_value = DEFAULT_POLL_INTERVAL

    if poll_value <= 0:
        raise ConfigurationError("poll_interval must be a positive integer.")

    enable_lock = parse_bool(file_cfg.get("enable_lock", "false"))
    lock_file_path = _optional_path(file_cfg.get("lock_file_path"))
    if enable_lock and lock_file_path is None:
        raise ConfigurationError("lock_file_path is required when enable_lock is set.")

    suffix = file_cfg.get("artifact_suffix", DEFAULT_ARTIFACT_SUFFIX).strip()
    if not suffix:
        raise ConfigurationError("artifact_suffix must not be empty.")

    tiers = _collect_tier_policies(file_cfg)

    try:
        retention = RetentionConfig(
            tiers=tiers,
            last_execution_file=_optional_path(last_execution_value),
            artifact_suffix=suffix,
        )
    except ValueError as error:
        raise ConfigurationError(str(error)) from error

    return BackupConfig(
        retention=retention,
        source_image=_resolve_path(source_value),
        last_id_file=_optional_path(file_cfg.get("last_id_file")),
        perf_log_path=_optional_path(file_cfg.get("perf_log_path")),
        log_file=_optional_path(log_file_value),
        enable_lock=enable_lock,
        lock_file_path=lock_file_path,
        loop=loop,
        poll_interval=poll_value,
        dry_run=dry_run,
    )


def _collect_tier_policies(file_cfg: Dict[str, str]) -> Dict[BackupLevel, TierPolicy]:
    grouped: Dict[BackupLevel, Dict[str, str]] = {}
    for key, value in file_cfg.items():
        if not key.startswith("tier."):
            continue
        segments = key.split(".")
        if len(segments) != 3:
            raise ConfigurationError(
                "Config tier entries must use the tier.<level>.<field> format."
            )
        _, level_name, field_name = segments
        try:
            level = BackupLevel.parse(level_name)
        except ValueError as error:
            raise ConfigurationError(str(error)) from error
        if field_name not in TIER_FIELDS:
            raise ConfigurationError(
                f"Unknown tier field tier.{level_name}.{field_name}; "
                f"expected one of {', '.join(TIER_FIELDS)}."
            )
        grouped.setdefault(level, {})[field_name] = value

    tiers: Dict[BackupLevel, TierPolicy] = {}
    for level in LEVEL_ORDER:
        fields = grouped.get(level, {})
        if "keep" not in fields or "dir" not in fields:
            raise ConfigurationError(
                f"tier.{level}.keep and tier.{level}.dir must both be provided."
            )
        keep = parse_int(fields["keep"], f"tier.{level}.keep")
        if keep <= 0:
            raise ConfigurationError(f"tier.{level}.keep must be a positive integer.")
        tiers[level] = TierPolicy(keep=keep, directory=_resolve_path(fields["dir"]))
    return tiers


def _resolve_path(value) -> Path:
    return Path(value).expanduser().resolve()


def _optional_path(value) -> Optional[Path]:
    if value is None or not str(value).strip():
        return None
    return _resolve_path(value)


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


CONFIG_TEMPLATE = """\
[backup]
# Simulate every action without copying, moving or deleting files.
# Review the log output, then set this to false.
dry_run = true

# Disk image saved into the 30m tier on every backup.
source_image = C:/Backups/backup.vhdx
# Six digit sequence number used to name artifacts.
last_id_file = C:/Backups/last_id.txt
# Last run per level; prevents running a level twice in the same minute.
# Leave empty to disable.
last_execution_file = C:/Backups/last_execution.json
artifact_suffix = .vhdx

# Promotion path: 30m -> 3h -> 6h -> 12h -> 1d -> deleted
tier.30m.keep = 5
tier.30m.dir = C:/Backups/30m
tier.3h.keep = 2
tier.3h.dir = C:/Backups/3h
tier.6h.keep = 2
tier.6h.dir = C:/Backups/6h
tier.12h.keep = 2
tier.12h.dir = C:/Backups/12h
tier.1d.keep = 5
tier.1d.dir = C:/Backups/1d

# Leave empty to log to the console only.
log_file = C:/Backups/log.txt
# Tab separated: timestamp, start ms, total ms, save ms, retention ms
perf_log_path = C:/Backups/perf.tsv

enable_lock = true
lock_file_path = C:/Backups/backup.lock

loop = false
poll_interval = 30
"""


def write_config_template(destination: Path) -> None:
    if destination.exists():
        raise ConfigurationError(f"Refusing to overwrite existing file {destination}.")
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(CONFIG_TEMPLATE, encoding="utf-8")


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level, format=LOG_FORMAT)


def attach_log_file(log_file: Path) -> logging.Handler:
    """Copy all log output to log_file in addition to the console."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    return handler


def next_sequence_id(path: Optional[Path], *, dry_run: bool) -> int:
    """Return the next artifact sequence number.

    The counter file holds the last number issued. Dry runs read it but
    leave it untouched.
    """
    current = 0
    if path is not None and path.exists():
        text = path.read_text(encoding="utf-8").strip()
        if text:
            current = parse_int(text.splitlines()[0], f"sequence number in {path}")

    next_id = current + 1
    if path is not None and not dry_run:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{next_id:0{SEQUENCE_WIDTH}d}\n", encoding="utf-8")
    return next_id


def artifact_name(sequence_id: int, timestamp: datetime, suffix: str) -> str:
    return f"{sequence_id:0{SEQUENCE_WIDTH}d}_{timestamp.strftime(ARTIFACT_TIMESTAMP_FORMAT)}{suffix}"


def acquire_lock(lock_path: Path) -> Path:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as error:
        raise LockConflictError(f"Lock file {lock_path} already exists.") from error
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(f"{os.getpid()}\n")
    except OSError:
        # Never leave a half-written lock behind.
        lock_path.unlink(missing_ok=True)
        raise
    return lock_path


def release_lock(lock_path: Path) -> None:
    lock_path.unlink(missing_ok=True)


def write_pid_file(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")


def save_artifact(source: Path, destination_dir: Path, name: str, *, dry_run: bool) -> Path:
    target_file = destination_dir / name
    logger.info("Saving %s to %s", source, target_file)

    if dry_run:
        return target_file

    if not source.is_file():
        raise FileNotFoundError(f"Source image {source} does not exist.")

    destination_dir.mkdir(parents=True, exist_ok=True)
    from shutil import copy2

    copy2(source, target_file)
    return target_file


def log_performance(path: Optional[Path], timings: CycleTimings, *, dry_run: bool) -> None:
    if path is None:
        return
    if dry_run:
        logger.info("Would append performance record to %s", path)
        return
    line = "\t".join(
        [
            datetime.now().astimezone().isoformat(timespec="seconds"),
            str(int(timings.started.timestamp() * 1000)),
            str(int(timings.total_seconds * 1000)),
            str(int(timings.save_seconds * 1000)),
            str(int(timings.retention_seconds * 1000)),
        ]
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as error:
        logger.warning("Could not write performance log %s: %s", path, error)


def run_backup(config: BackupConfig, level: BackupLevel, now: datetime) -> Path:
    """Promote and prune the tiers, then save a new artifact into the 30m tier."""
    lock_path: Optional[Path] = None
    if config.enable_lock and not config.dry_run and config.lock_file_path is not None:
        lock_path = acquire_lock(config.lock_file_path)

    try:
        started = time.monotonic()
        timings = CycleTimings(started=now)

        sequence_id = next_sequence_id(config.last_id_file, dry_run=config.dry_run)
        name = artifact_name(sequence_id, now, config.retention.artifact_suffix)
        logger.info("Starting %s backup %s", level, name)

        retention_start = time.monotonic()
        promotions, deletions = apply_retention(
            config.retention, dry_run=config.dry_run, log=logger
        )
        timings.retention_seconds = time.monotonic() - retention_start

        save_start = time.monotonic()
        target = save_artifact(
            config.source_image,
            config.retention.policy(BackupLevel.MINUTES_30).directory,
            name,
            dry_run=config.dry_run,
        )
        timings.save_seconds = time.monotonic() - save_start
        timings.total_seconds = time.monotonic() - started

        log_performance(config.perf_log_path, timings, dry_run=config.dry_run)

        pruned = sum(len(paths) for paths in deletions.values())
        logger.info(
            "%s %s backup %s; %d promotion(s), %d artifact(s) pruned.",
            "Simulated" if config.dry_run else "Completed",
            level,
            name,
            len(promotions),
            pruned,
        )
        return target
    finally:
        if lock_path is not None:
            release_lock(lock_path)


def process_cycle(config: BackupConfig, now: datetime) -> int:
    try:
        execute, level = should_execute(config.retention, now, log=logger)
    except LedgerError as error:
        logger.error("Cannot decide whether a backup is due: %s", error)
        return 1

    if not execute or level is None:
        log_func = logger.debug if config.loop else logger.info
        log_func("No backup due at %s.", now.strftime("%Y-%m-%d %H:%M:%S"))
        return 0

    logger.info("Backup level %s due at %s.", level, now.strftime("%Y-%m-%d %H:%M:%S"))

    try:
        run_backup(config, level, now)
    except LockConflictError as error:
        logger.warning("Another backup is running, skipping this cycle: %s", error)
        return 0
    except (OSError, ConfigurationError) as error:
        logger.error("Backup at level %s failed: %s", level, error)
        return 1

    try:
        record_execution(config.retention, level, now)
    except LedgerError as error:
        logger.error("Backup ran but its execution could not be recorded: %s", error)
        return 1
    return 0


def run(
    config: BackupConfig,
    *,
    clock: Optional[Clock] = None,
    pid_file: Optional[Path] = None,
) -> int:
    clock = clock or datetime.now
    if not config.loop:
        return process_cycle(config, clock())

    if pid_file is not None:
        write_pid_file(pid_file)
    logger.info("Polling every %d seconds (pid %d).", config.poll_interval, os.getpid())
    try:
        while True:
            process_cycle(config, clock())
            time.sleep(config.poll_interval)
    finally:
        if pid_file is not None:
            pid_file.unlink(missing_ok=True)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    if args.init_config:
        try:
            write_config_template(args.init_config)
        except (ConfigurationError, OSError) as error:
            logger.error("%s", error)
            return 2
        logger.info("Wrote config template to %s; review it and set dry_run = false.", args.init_config)
        return 0

    file_config: Optional[Dict[str, str]] = None
    try:
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except ConfigurationError as error:
        logger.error("%s", error)
        return 2

    if config.log_file is not None:
        try:
            attach_log_file(config.log_file)
        except OSError as error:
            logger.error("Cannot open log file %s: %s", config.log_file, error)
            return 2

    if config.dry_run:
        logger.info("Dry run: no files will be copied, moved or deleted.")

    try:
        return run(config, pid_file=args.pid_file)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
