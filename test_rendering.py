#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Report Rendering Test Suite
===========================

Tests the ReportRenderer output formats:
- Markdown table rows, empty-cell symbols and the totals row
- HTML hover titles listing built and non-built branches
- JSON report round trip through the file system
- Full report generation through BranchReporter
"""

import json
import logging
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

# Add the project root to Python path to import our module
sys.path.insert(0, str(Path(__file__).parent))

from generate_branch_report import (
    BranchCategory,
    BranchReporter,
    HtmlDocument,
    ReportRenderer,
    aggregate_results,
    reconcile_repository,
)


def create_test_config():
    return {
        "project": "maven",
        "gitbox": {"url": "https://gitbox.example.org/repos/asf", "project_table_id": "maven"},
        "jenkins": {"jobs_base_url": "https://ci.example.org/job/"},
        "github": {"url": "https://github.com/apache/"},
        "issue_tracker": {"url": "https://issues.example.org/jira/projects/"},
        "issue_projects": {"maven-compiler-plugin": "MCOMPILER"},
        "performance": {"max_workers": 1},
        "report": {"check_dependabot_config": False},
    }


def create_report_data(dependabot_config=None):
    """Report data with one fully classified repository and one master-only repository."""
    compiler = reconcile_repository(
        "maven-compiler-plugin",
        ["master", "MCOMPILER-500-fix", "dependabot/npm_and_yarn/lodash", "feature/x"],
        {"job_master", "job_MCOMPILER-500-fix"},
        "https://ci.example.org/job/maven-compiler-plugin",
        {"maven-compiler-plugin": "MCOMPILER"},
        branches_url="https://gitbox.example.org/repos/asf?p=maven-compiler-plugin.git;a=heads",
    )
    wagon = reconcile_repository(
        "maven-wagon",
        ["master"],
        {"job_master"},
        "https://ci.example.org/job/maven-wagon",
        {},
        branches_url="https://gitbox.example.org/repos/asf?p=maven-wagon.git;a=heads",
    )
    totals, ordered = aggregate_results([wagon, compiler])

    repositories = []
    for result in ordered:
        repo = result.to_dict()
        repo["issue_project"] = {"maven-compiler-plugin": "MCOMPILER"}.get(result.repository)
        repo["dependabot_config"] = dependabot_config if result.repository == "maven-wagon" else None
        repositories.append(repo)

    return {
        "schema_version": "1.0.0",
        "generated_at": "2025-01-01T00:00:00+00:00",
        "project": "maven",
        "repositories": repositories,
        "totals": totals.to_dict(),
        "errors": [],
    }


def test_markdown_rows():
    """Each repository renders as jobs / branches per category."""
    print("Testing Markdown rows...")

    renderer = ReportRenderer(create_test_config(), logging.getLogger("test"))
    content = renderer._generate_markdown_content(create_report_data("present"))

    assert "| Repository | Issues | master | Issue branches | Dependabot | Other | Total |" in content
    assert (
        "| maven-compiler-plugin | MCOMPILER | 1 / 1 | **1 / 1** | **0 / 1** | **0 / 1** | 2 / 4 |"
        in content
    )
    assert "| maven-wagon |  | 1 / 1 | - | - | - | 1 / 1 |" in content
    assert "| **Total** |  | 2 / 2 | 1 / 1 | 0 / 1 | 0 / 1 | 3 / 5 |" in content

    # Ranked order: compiler plugin (2 jobs) before wagon (1 job)
    assert content.index("maven-compiler-plugin |") < content.index("maven-wagon |")
    assert "## Skipped Repositories" not in content

    print("  ✅ Markdown rows work correctly")


def test_dependabot_empty_cell_symbols():
    """Empty dependabot cells reflect the outcome of the config check."""
    print("Testing dependabot empty cells...")

    renderer = ReportRenderer(create_test_config(), logging.getLogger("test"))
    repo = {"dependabot_config": None}

    expectations = {None: "-", "present": "-", "absent": "", "error": "_"}
    for status, symbol in expectations.items():
        repo["dependabot_config"] = status
        assert renderer.empty_cell(BranchCategory.DEPENDENCY_BOT, repo) == symbol, status
        assert renderer.empty_cell(BranchCategory.OTHER, repo) == "-"

    content = renderer._generate_markdown_content(create_report_data("error"))
    assert "| maven-wagon |  | 1 / 1 | - | _ | - | 1 / 1 |" in content

    print("  ✅ Dependabot empty cells work correctly")


def test_skipped_section():
    """Skipped repositories are listed with their reason."""
    print("Testing skipped repositories section...")

    renderer = ReportRenderer(create_test_config(), logging.getLogger("test"))
    data = create_report_data()
    data["errors"] = [{"repo": "maven-broken", "error": "No branch table", "category": "structure_not_found"}]

    content = renderer._generate_markdown_content(data)
    assert "## Skipped Repositories" in content
    assert "| maven-broken | No branch table |" in content

    print("  ✅ Skipped repositories section works correctly")


def test_html_titles():
    """HTML cells carry branch names in their hover titles."""
    print("Testing HTML hover titles...")

    renderer = ReportRenderer(create_test_config(), logging.getLogger("test"))

    with tempfile.TemporaryDirectory() as temp_dir:
        output_path = Path(temp_dir) / "report.html"
        renderer.render_html_report(create_report_data(), output_path)
        document = HtmlDocument(output_path.read_text(encoding="utf-8"))

    titles = [a.get("title") for a in document.soup.find_all("a") if a.get("title")]
    assert "MCOMPILER-500-fix" in titles
    assert "-- non-Jenkins branches --\ndependabot/npm_and_yarn/lodash" in titles
    assert "-- non-Jenkins branches --\nfeature/x" in titles

    hrefs = {a.get_text(): a.get("href") for a in document.soup.find_all("a")}
    assert hrefs["MCOMPILER"] == "https://issues.example.org/jira/projects/MCOMPILER"
    assert hrefs["maven-wagon"] == "https://github.com/apache/maven-wagon"

    print("  ✅ HTML hover titles work correctly")


def test_generate_reports_writes_files():
    """A full run writes JSON, Markdown, HTML and the resolved config."""
    print("Testing report generation...")

    gitbox = "https://gitbox.example.org/repos/asf"
    pages = {
        gitbox: (
            '<table id="maven"><tbody>'
            '<tr><td><a>maven-wagon.git</a></td></tr>'
            "</tbody></table>"
        ),
        f"{gitbox}?p=maven-wagon.git;a=heads": (
            '<table class="heads"><tr><td><a class="list name">master</a></td></tr>'
            '<tr><td><a class="list name">WAGON-1</a></td></tr></table>'
        ),
        "https://ci.example.org/job/maven-wagon": '<table><tr id="job_master"></tr></table>',
    }

    fetcher = MagicMock()
    fetcher.fetch.side_effect = lambda url, service="gitbox": HtmlDocument(pages[url], url=url)

    config = create_test_config()
    reporter = BranchReporter(config, logging.getLogger("test"), fetcher=fetcher)

    with tempfile.TemporaryDirectory() as temp_dir:
        output_dir = Path(temp_dir) / "maven"
        files = reporter.generate_reports(output_dir)

        assert set(files) == {"json", "markdown", "html", "config"}
        for path in files.values():
            assert path.exists(), path

        data = json.loads(files["json"].read_text(encoding="utf-8"))
        assert data["project"] == "maven"
        assert data["totals"]["total"] == {"jobs": 1, "git": 2}
        assert data["repositories"][0]["branches"]["other"]["git"] == ["WAGON-1"]

        files = reporter.generate_reports(Path(temp_dir) / "plain", include_html=False)
        assert "html" not in files

    print("  ✅ Report generation works correctly")


def run_all_tests():
    """Run all rendering tests."""
    print("🧪 Running Report Rendering Tests")
    print("-" * 60)

    tests = [
        test_markdown_rows,
        test_dependabot_empty_cell_symbols,
        test_skipped_section,
        test_html_titles,
        test_generate_reports_writes_files,
    ]

    passed = 0
    failed = 0

    for test_func in tests:
        try:
            test_func()
            passed += 1
        except Exception as e:
            print(f"  ❌ {test_func.__name__} failed: {e}")
            failed += 1
            import traceback
            traceback.print_exc()

    print("-" * 60)
    print(f"📊 Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
