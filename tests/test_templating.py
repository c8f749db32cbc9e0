from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from tyreboard.templating import _format_timestamp, _tydex_number, render_tydex

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "tydex"


@pytest.mark.unit
def test_bundled_mf62_template_renders() -> None:
    content = render_tydex(
        TEMPLATE_DIR,
        "mf62.tdx.j2",
        {
            "project_name": "Alpha",
            "protocol": "MF6pt2",
            "run_number": "3",
            "p": "2.40",
            "l": "4500.0",
            "generated_at": datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        },
    )
    assert "MEASID                  'Alpha_3'" in content
    assert "DATE                    '01-May-2024 09:30:00'" in content
    assert content.rstrip().endswith("**END")
    assert "'bar'  2.4" in content
    assert "'N'    4500" in content


@pytest.mark.unit
def test_missing_template_raises_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        render_tydex(tmp_path, "absent.j2", {})


@pytest.mark.unit
def test_filters() -> None:
    assert _tydex_number("") == "0"
    assert _tydex_number("abc") == "abc"
    assert _tydex_number(0.123456789) == "0.123457"
    assert _format_timestamp(None) == "—"
    assert _format_timestamp("2024-01-02T03:04:05") == "02-Jan-2024 03:04:05"
