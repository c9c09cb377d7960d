#!/usr/bin/env python3
"""
Utility to create a mock disk image and sequence-numbered tier artifacts.

Useful for trying out rotation and promotion without waiting half an hour
between real backups.
"""
from __future__ import annotations

import argparse
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List

from rotate_backup import artifact_name
from rotation import DEFAULT_ARTIFACT_SUFFIX


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a mock disk image or seed a tier directory with mock artifacts."
    )
    parser.add_argument(
        "--image",
        type=Path,
        help="Create a mock source disk image at this path.",
    )
    parser.add_argument(
        "--size",
        type=int,
        default=1024,
        help="Size in bytes of the mock disk image (default: 1024).",
    )
    parser.add_argument(
        "--tier-dir",
        type=Path,
        help="Tier directory to fill with mock artifacts.",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of artifacts to create (default: 1).",
    )
    parser.add_argument(
        "--start-id",
        type=int,
        default=1,
        help="Sequence number of the first artifact (default: 1).",
    )
    parser.add_argument(
        "--suffix",
        default=DEFAULT_ARTIFACT_SUFFIX,
        help=f"Artifact file suffix (default: {DEFAULT_ARTIFACT_SUFFIX}).",
    )
    parser.add_argument(
        "--timestamp-step",
        type=str,
        default="30m",
        help="Time between successive artifacts (e.g. 30m, 3h). Default: 30m.",
    )
    return parser.parse_args(argv)


def parse_duration(value: str) -> timedelta:
    units = {
        "s": 1,
        "m": 60,
        "h": 60 * 60,
        "d": 24 * 60 * 60,
    }

    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("Duration value must not be empty.")

    suffix = normalized[-1]
    if suffix in units:
        number_part = normalized[:-1]
        multiplier = units[suffix]
    else:
        number_part = normalized
        multiplier = 1

    if not number_part:
        raise ValueError(f"Invalid duration value: {value}")

    try:
        number = int(number_part)
    except ValueError as error:
        raise ValueError(f"Invalid duration value: {value}") from error

    if number <= 0:
        raise ValueError("Duration value must be positive.")

    return timedelta(seconds=number * multiplier)


def make_mock_image(path: Path, size: int) -> Path:
    if size < 0:
        raise ValueError("Image size must not be negative.")
    path.parent.mkdir(parents=True, exist_ok=True)
    header = b"vhdxfile"
    payload = (header * (size // len(header) + 1))[:size]
    path.write_bytes(payload)
    return path


def make_mock_artifacts(
    tier_dir: Path,
    *,
    count: int,
    start_id: int = 1,
    suffix: str = DEFAULT_ARTIFACT_SUFFIX,
    first_timestamp: datetime | None = None,
    step: timedelta = timedelta(minutes=30),
) -> List[Path]:
    if count <= 0:
        raise ValueError("count must be a positive integer.")
    if start_id <= 0:
        raise ValueError("start_id must be a positive integer.")

    tier_dir.mkdir(parents=True, exist_ok=True)
    timestamp = first_timestamp or datetime.now().replace(second=0, microsecond=0)

    created: List[Path] = []
    for offset in range(count):
        path = tier_dir / artifact_name(start_id + offset, timestamp, suffix)
        path.write_bytes(f"mock artifact {start_id + offset}".encode())
        created.append(path)
        timestamp += step
    return created


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    if args.image is None and args.tier_dir is None:
        print("Error: pass --image, --tier-dir or both.")
        return 2

    try:
        step = parse_duration(args.timestamp_step)
    except ValueError as error:
        print(f"Error: {error}")
        return 2

    try:
        if args.image is not None:
            image = make_mock_image(args.image.resolve(), args.size)
            print(f"Created mock disk image: {image}")

        if args.tier_dir is not None:
            for path in make_mock_artifacts(
                args.tier_dir.resolve(),
                count=args.count,
                start_id=args.start_id,
                suffix=args.suffix,
                step=step,
            ):
                print(f"Created mock artifact: {path}")
    except ValueError as error:
        print(f"Error: {error}")
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
