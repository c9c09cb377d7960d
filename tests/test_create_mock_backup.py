import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

import create_mock_backup
from rotation import LEVEL_ORDER, RetentionConfig, TierPolicy, apply_retention


def test_make_mock_artifacts_names_follow_sequence(tmp_path: Path) -> None:
    created = create_mock_backup.make_mock_artifacts(
        tmp_path / "30m",
        count=3,
        start_id=9,
        first_timestamp=datetime(2024, 5, 1, 23, 30),
        step=timedelta(minutes=30),
    )

    assert [path.name for path in created] == [
        "000009_20240501_2330.vhdx",
        "000010_20240502_0000.vhdx",
        "000011_20240502_0030.vhdx",
    ]


def test_mock_artifacts_feed_retention(tmp_path: Path) -> None:
    config = RetentionConfig(
        tiers={level: TierPolicy(keep=2, directory=tmp_path / level.value) for level in LEVEL_ORDER}
    )
    create_mock_backup.make_mock_artifacts(tmp_path / "30m", count=4)

    apply_retention(config)

    assert len(list((tmp_path / "30m").iterdir())) == 2
    assert [path.name[:6] for path in (tmp_path / "3h").iterdir()] == ["000001"]


def test_make_mock_image_has_requested_size(tmp_path: Path) -> None:
    image = create_mock_backup.make_mock_image(tmp_path / "images" / "disk.vhdx", 100)
    assert image.stat().st_size == 100


def test_main_requires_a_target(capsys: pytest.CaptureFixture) -> None:
    assert create_mock_backup.main([]) == 2
    assert "Error" in capsys.readouterr().out


def test_main_seeds_tier_directory(tmp_path: Path) -> None:
    tier_dir = tmp_path / "1d"

    assert create_mock_backup.main(["--tier-dir", str(tier_dir), "--count", "2", "--timestamp-step", "1d"]) == 0
    assert len(list(tier_dir.glob("*.vhdx"))) == 2


@pytest.mark.parametrize("value", ["", "0m", "xm", "m"])
def test_parse_duration_rejects_invalid(value: str) -> None:
    with pytest.raises(ValueError):
        create_mock_backup.parse_duration(value)


def test_parse_duration_units() -> None:
    assert create_mock_backup.parse_duration("3h") == timedelta(hours=3)
    assert create_mock_backup.parse_duration("45") == timedelta(seconds=45)
