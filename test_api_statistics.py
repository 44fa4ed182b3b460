#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Test script for API statistics tracking.

This script tests the APIStatistics class to ensure proper tracking and reporting
of Gitbox, Jenkins and GitHub calls.
"""

import os
import sys
import tempfile
import threading
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path to import generate_branch_report
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from generate_branch_report import APIStatistics


def test_api_statistics():
    """Test API statistics tracking."""
    print("🧪 Testing API Statistics Tracker\n")

    stats = APIStatistics()

    # Test 1: Initial state
    print("Test 1: Initial state")
    assert stats.get_total_calls("gitbox") == 0
    assert stats.get_total_errors("gitbox") == 0
    assert not stats.has_errors()
    print("✅ Initial state is correct\n")

    # Test 2: Record Gitbox successes
    print("Test 2: Recording Gitbox successes")
    stats.record_success("gitbox")
    stats.record_success("gitbox")
    stats.record_success("gitbox")
    assert stats.get_total_calls("gitbox") == 3
    assert stats.stats["gitbox"]["success"] == 3
    assert stats.get_total_errors("gitbox") == 0
    print("✅ Gitbox successes recorded correctly\n")

    # Test 3: Record Jenkins errors
    print("Test 3: Recording Jenkins errors")
    stats.record_success("jenkins")
    stats.record_error("jenkins", 404)
    stats.record_error("jenkins", 503)
    stats.record_error("jenkins", 503)
    stats.record_exception("jenkins")
    assert stats.get_total_errors("jenkins") == 4
    assert stats.stats["jenkins"]["errors"][404] == 1
    assert stats.stats["jenkins"]["errors"][503] == 2
    assert stats.stats["jenkins"]["errors"]["exception"] == 1
    assert stats.get_total_calls("jenkins") == 5
    print("✅ Jenkins errors recorded correctly\n")

    # Test 4: Unknown services are ignored
    print("Test 4: Unknown services")
    stats.record_success("gerrit")
    stats.record_error("gerrit", 500)
    assert stats.get_total_calls("gerrit") == 0
    assert "gerrit" not in stats.stats
    print("✅ Unknown services ignored\n")

    # Test 5: has_errors detection
    print("Test 5: Testing error detection")
    assert stats.has_errors()
    stats_clean = APIStatistics()
    stats_clean.record_success("github")
    assert not stats_clean.has_errors()
    print("✅ Error detection working correctly\n")

    # Test 6: Console output formatting
    print("Test 6: Testing console output formatting")
    output = stats.format_console_output()
    assert "Gitbox Statistics" in output
    assert "Jenkins Statistics" in output
    assert "Github Statistics" not in output
    assert "Successful calls: 3" in output
    assert "Failed calls: 4" in output
    assert "Error 404: 1" in output
    assert "Error 503: 2" in output
    assert "Error exception: 1" in output
    print("✅ Console output formatted correctly\n")

    # Test 7: Empty statistics
    print("Test 7: Testing empty statistics")
    assert APIStatistics().format_console_output() == ""
    print("✅ Empty statistics handled correctly\n")

    print("🎉 All tests passed!")


def test_concurrent_recording():
    """Counters stay exact when recorded from worker threads."""
    stats = APIStatistics()

    def record():
        for _ in range(1000):
            stats.record_success("jenkins")
            stats.record_error("jenkins", 500)

    threads = [threading.Thread(target=record) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert stats.stats["jenkins"]["success"] == 8000
    assert stats.stats["jenkins"]["errors"][500] == 8000


def test_step_summary():
    """Statistics are appended to the GitHub step summary file."""
    stats = APIStatistics()
    stats.record_success("github")
    stats.record_error("gitbox", 502)

    with tempfile.TemporaryDirectory() as temp_dir:
        summary = Path(temp_dir) / "summary.md"
        with patch.dict(os.environ, {"GITHUB_STEP_SUMMARY": str(summary)}):
            stats.write_to_step_summary()

        content = summary.read_text(encoding="utf-8")
        assert "## 📊 External API Statistics" in content
        assert "### Gitbox" in content
        assert "- `502`: 1 call(s)" in content
        assert "### Github" in content
        assert "### Jenkins" not in content

    # Without the variable nothing is written
    with patch.dict(os.environ, {}, clear=True):
        stats.write_to_step_summary()


if __name__ == "__main__":
    try:
        test_api_statistics()
        test_concurrent_recording()
        test_step_summary()
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed with exception: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
