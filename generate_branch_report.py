#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Branch Coverage Reporting System - Branch vs. CI Job Reconciliation Tool

This script compares the branches of every Git repository in a project with
the CI jobs that build them, to surface drift between "branches that exist"
and "branches that are actually built":
- Repository discovery from the Gitbox index page
- Branch classification (master, issue-tracker, dependabot, other)
- Per-branch CI coverage matching against Jenkins multibranch job pages
- Fleet-wide totals and deterministic ranking
- Outputs in JSON, Markdown, and HTML formats

Architecture:
- Single script with modular internal structure
- Configuration-driven with template + project overrides
- JSON as canonical data source, Markdown/HTML as views
- Per-repository failures are logged and skipped, never fatal
- Bounded concurrency for the remote fetches

Schema Version: 1.0.0
"""

import argparse
import concurrent.futures
import copy
import datetime
import enum
import hashlib
import html
import json
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, Mapping, Optional
from urllib.parse import quote_plus

import httpx
import yaml
from bs4 import BeautifulSoup
from bs4.element import Tag

# =============================================================================
# CONSTANTS AND SCHEMA DEFINITIONS
# =============================================================================

SCRIPT_VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"
DEFAULT_CONFIG_DIR = "configuration"
DEFAULT_OUTPUT_DIR = "reports"

DEFAULT_BRANCH = "master"
DEPENDABOT_PREFIX = "dependabot/"
DEPENDABOT_CONFIG = ".github/dependabot.yml"
JOB_ID_PREFIX = "job_"
MASTER_JOB_ID = "job_master"

# Services tracked by APIStatistics
API_SERVICES = ("gitbox", "jenkins", "github")

# JSON Schema structure (conceptual - used for validation and documentation)
EXPECTED_JSON_SCHEMA = {
    "schema_version": str,
    "generated_at": str,  # UTC ISO8601
    "project": str,
    "config_digest": str,  # SHA256 of resolved config
    "script_version": str,
    "repositories": list,  # [result_dict, ...] in ranked order
    "totals": dict,  # {category: {"jobs": int, "git": int}, "total": {...}}
    "errors": list,  # [{"repo": str, "error": str, "category": str}, ...]
}

# =============================================================================
# API STATISTICS TRACKING
# =============================================================================


class APIStatistics:
    """Track statistics for external calls (Gitbox, Jenkins, GitHub)."""

    def __init__(self, services: Iterable[str] = API_SERVICES):
        """Initialize statistics tracker."""
        self._lock = threading.Lock()
        self.stats: dict[str, dict[str, Any]] = {
            service: {"success": 0, "errors": {}} for service in services
        }

    def record_success(self, api_type: str) -> None:
        """Record a successful API call."""
        with self._lock:
            if api_type in self.stats:
                self.stats[api_type]["success"] += 1

    def record_error(self, api_type: str, status_code: int) -> None:
        """Record an API error by status code."""
        with self._lock:
            if api_type in self.stats:
                errors = self.stats[api_type]["errors"]
                errors[status_code] = errors.get(status_code, 0) + 1

    def record_exception(self, api_type: str, error_type: str = "exception") -> None:
        """Record an API exception (non-HTTP error)."""
        with self._lock:
            if api_type in self.stats:
                errors = self.stats[api_type]["errors"]
                errors[error_type] = errors.get(error_type, 0) + 1

    def get_total_calls(self, api_type: str) -> int:
        """Get total number of API calls (success + errors)."""
        if api_type not in self.stats:
            return 0
        return self.stats[api_type]["success"] + self.get_total_errors(api_type)

    def get_total_errors(self, api_type: str) -> int:
        """Get total number of errors for an API."""
        if api_type not in self.stats:
            return 0
        return sum(self.stats[api_type]["errors"].values())

    def has_errors(self) -> bool:
        """Check if any API has errors."""
        return any(self.get_total_errors(api_type) > 0 for api_type in self.stats)

    def _sorted_errors(self, api_type: str) -> list[tuple[Any, int]]:
        return sorted(self.stats[api_type]["errors"].items(), key=lambda x: str(x[0]))

    def format_console_output(self) -> str:
        """Format statistics for console output."""
        lines = []

        for api_type in self.stats:
            if self.get_total_calls(api_type) == 0:
                continue
            lines.append(f"\n📊 {api_type.capitalize()} Statistics:")
            lines.append(f"   ✅ Successful calls: {self.stats[api_type]['success']}")
            total_errors = self.get_total_errors(api_type)
            if total_errors > 0:
                lines.append(f"   ❌ Failed calls: {total_errors}")
                for code, count in self._sorted_errors(api_type):
                    lines.append(f"      • Error {code}: {count}")

        return "\n".join(lines) if lines else ""

    def write_to_step_summary(self) -> None:
        """Write statistics to GitHub Step Summary."""
        step_summary_file = os.environ.get("GITHUB_STEP_SUMMARY")
        if not step_summary_file:
            return

        try:
            with open(step_summary_file, "a", encoding="utf-8") as f:
                f.write("\n## 📊 External API Statistics\n\n")
                for api_type in self.stats:
                    if self.get_total_calls(api_type) == 0:
                        continue
                    f.write(f"### {api_type.capitalize()}\n\n")
                    f.write(f"- ✅ Successful calls: {self.stats[api_type]['success']}\n")
                    total_errors = self.get_total_errors(api_type)
                    if total_errors > 0:
                        f.write(f"- ❌ Failed calls: {total_errors}\n")
                        f.write("\n**Error Breakdown:**\n\n")
                        for code, count in self._sorted_errors(api_type):
                            f.write(f"- `{code}`: {count} call(s)\n")
                    f.write("\n")
        except OSError as e:
            logging.debug(f"Could not write API statistics to GITHUB_STEP_SUMMARY: {e}")


# Global statistics tracker
api_stats = APIStatistics()


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO", include_timestamps: bool = True
) -> logging.Logger:
    """Configure logging with structured format."""
    log_format = "[%(levelname)s]"
    if include_timestamps:
        log_format = "[%(asctime)s] " + log_format
    log_format += " %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S UTC" if include_timestamps else None,
    )

    logger = logging.getLogger("branch_reporter")
    return logger


# =============================================================================
# CONFIGURATION LOADING AND DEEP MERGE
# =============================================================================


def deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}")


def find_project_config(config_dir: Path, project: str) -> Optional[Path]:
    """Find ``<project>.config`` in config_dir, falling back to a case-insensitive match."""
    project_config_name = f"{project}.config"

    exact_match = config_dir / project_config_name
    if exact_match.exists():
        return exact_match

    for config_file in config_dir.glob("*.config"):
        if config_file.name.lower() == project_config_name.lower():
            return config_file

    return None


def load_configuration(config_dir: Path, project: str) -> dict[str, Any]:
    """
    Load configuration with template + project override merge strategy.

    Args:
        config_dir: Directory containing configuration files
        project: Project name for override file

    Returns:
        Merged configuration dictionary
    """
    template_path = config_dir / "template.config"

    # Load template (required)
    if not template_path.exists():
        raise FileNotFoundError(f"Template configuration not found: {template_path}")

    print(f"📝 Loading template config: {template_path}", file=sys.stderr)
    template_config = load_yaml_config(template_path)

    # Load project override (optional)
    project_config: dict[str, Any] = {}
    project_path = find_project_config(config_dir, project)
    if project_path:
        print(f"📝 Loading project config: {project_path}", file=sys.stderr)
        project_config = load_yaml_config(project_path)
    else:
        print(
            f"⚠️  No project-specific config found for '{project}' - using template defaults only",
            file=sys.stderr,
        )

    merged_config = deep_merge_dicts(template_config, project_config)
    merged_config["project"] = project

    validate_configuration(merged_config)
    return merged_config


def validate_configuration(config: dict[str, Any]) -> None:
    """Reject configuration values the reconciliation cannot work with."""
    issue_projects = config.get("issue_projects", {})
    if not isinstance(issue_projects, dict):
        raise ValueError("'issue_projects' must be a mapping of repository to issue prefix")
    for repository, prefix in issue_projects.items():
        if not isinstance(prefix, str) or not prefix:
            raise ValueError(f"Issue prefix for '{repository}' must be a non-empty string")

    excluded = config.get("excluded_repositories", [])
    if not isinstance(excluded, list):
        raise ValueError("'excluded_repositories' must be a list")

    if "jenkins" in config:
        jobs_base_url = config["jenkins"].get("jobs_base_url")
        if not isinstance(jobs_base_url, str) or not jobs_base_url.strip():
            raise ValueError("'jenkins.jobs_base_url' must be a non-empty URL")

    max_workers = config.get("performance", {}).get("max_workers", 8)
    if not isinstance(max_workers, int) or max_workers < 1:
        raise ValueError(f"'performance.max_workers' must be a positive integer, got {max_workers!r}")


def compute_config_digest(config: Dict[str, Any]) -> str:
    """Compute SHA256 digest of configuration for reproducibility tracking."""
    config_json = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(config_json.encode("utf-8")).hexdigest()


# =============================================================================
# ERRORS
# =============================================================================


class BranchReportError(Exception):
    """Base exception for branch report errors."""

    pass


class StructureNotFound(BranchReportError):
    """Raised when an expected table or element is missing from a document."""

    pass


class ListingFailure(StructureNotFound):
    """Raised when the repository index cannot be read; fatal for the run."""

    pass


class FetchFailure(BranchReportError):
    """Raised when a document cannot be retrieved after all retries."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class EncodingFailure(BranchReportError):
    """Raised when a branch name cannot be encoded into a job identifier."""

    pass


# =============================================================================
# HTML DOCUMENTS AND RESILIENT FETCHING
# =============================================================================


class HtmlDocument:
    """Structural queries over a Gitbox or Jenkins HTML page."""

    def __init__(self, content: str, url: str = ""):
        self.url = url
        self.soup = BeautifulSoup(content, "lxml")

    def find_branch_table(self) -> Optional[Tag]:
        """Return the Gitbox ``table.heads`` branch listing, if present."""
        return self.soup.select_one("table.heads")

    def find_by_id(self, element_id: str) -> Optional[Tag]:
        return self.soup.find(id=element_id)

    def has_element_with_id(self, element_id: str) -> bool:
        return self.find_by_id(element_id) is not None

    def rows(self, table: Tag) -> list[Tag]:
        return table.select("tr")

    def name(self, row: Tag) -> Optional[str]:
        """Text of the row's ``a.name`` anchor, or None when the row has none."""
        anchor = row.select_one("a.name")
        if anchor is None:
            return None
        return anchor.get_text(strip=True)

    def element_ids(self, prefix: str = "") -> set[str]:
        """All element ids in the document starting with prefix."""
        return {
            element["id"]
            for element in self.soup.find_all(id=True)
            if element["id"].startswith(prefix)
        }


class DocumentFetcher:
    """HTTP client that retrieves HTML documents, retrying transient failures."""

    RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        timeout: float = 30.0,
        retries: int = 3,
        backoff_factor: float = 1.0,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize fetcher."""
        self.retries = max(1, retries)
        self.backoff_factor = backoff_factor
        self.stats = stats or api_stats
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
            headers={
                "User-Agent": f"branch-reports/{SCRIPT_VERSION}",
                "Accept": "text/html",
            },
            transport=transport,
        )

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, *args):
        """Exit context manager and cleanup."""
        self.close()

    def close(self):
        """Close HTTP client."""
        if hasattr(self, "client"):
            self.client.close()

    def fetch(self, url: str, service: str = "gitbox") -> HtmlDocument:
        """
        Retrieve and parse the document at url.

        Transport errors and 429/5xx responses are retried with exponential
        backoff; other error statuses fail immediately.

        Raises:
            FetchFailure: when no attempt succeeded
        """
        failure: Optional[FetchFailure] = None

        for attempt in range(1, self.retries + 1):
            try:
                response = self.client.get(url)
            except httpx.TransportError as e:
                self.stats.record_exception(service)
                failure = FetchFailure(url, str(e) or type(e).__name__)
                logging.debug(f"Attempt {attempt}/{self.retries} for {url} failed: {e}")
            else:
                if response.is_success:
                    self.stats.record_success(service)
                    return HtmlDocument(response.text, url=url)

                self.stats.record_error(service, response.status_code)
                failure = FetchFailure(
                    url, f"HTTP {response.status_code}", response.status_code
                )
                if response.status_code not in self.RETRY_STATUS_CODES:
                    raise failure
                logging.debug(
                    f"Attempt {attempt}/{self.retries} for {url} returned HTTP {response.status_code}"
                )

            if attempt < self.retries:
                time.sleep(self.backoff_factor * (2 ** (attempt - 1)))

        assert failure is not None
        raise failure

    def head(self, url: str, service: str = "github") -> int:
        """Issue a single HEAD request and return its status code."""
        try:
            response = self.client.head(url)
        except httpx.TransportError as e:
            self.stats.record_exception(service)
            raise FetchFailure(url, str(e) or type(e).__name__)

        if response.is_success or response.status_code == 404:
            self.stats.record_success(service)
        else:
            self.stats.record_error(service, response.status_code)
        return response.status_code


class DependabotConfigChecker:
    """Checks whether a repository carries a dependabot configuration on GitHub."""

    def __init__(self, fetcher: DocumentFetcher, github_url: str):
        self.fetcher = fetcher
        self.github_url = github_url.rstrip("/") + "/"

    def config_url(self, repository: str) -> str:
        return f"{self.github_url}{repository}/blob/{DEFAULT_BRANCH}/{DEPENDABOT_CONFIG}"

    def has_config(self, repository: str) -> bool:
        """
        True when the config file exists on the default branch.

        Raises:
            FetchFailure: when GitHub could not be reached
        """
        return self.fetcher.head(self.config_url(repository)) == 200


# =============================================================================
# DATA MODEL
# =============================================================================


class BranchCategory(enum.Enum):
    """Branch categories, in report column order."""

    MASTER = "master"
    ISSUE_LINKED = "issue"
    DEPENDENCY_BOT = "dependabot"
    OTHER = "other"


@dataclass(frozen=True)
class BranchRecord:
    """A branch with its category and CI coverage."""

    name: str
    category: BranchCategory
    has_job: bool


@dataclass(frozen=True)
class Result:
    """
    Reconciliation outcome for one repository.

    ``git`` holds, per category, every branch name in source order; ``jobs``
    holds the subset of those names that have a CI job, in the same order.
    Counts are derived from the collections.
    """

    repository: str
    job_url: str
    branches_url: str = ""
    git: Mapping[BranchCategory, tuple[str, ...]] = field(default_factory=dict)
    jobs: Mapping[BranchCategory, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self):
        git = {category: tuple(self.git.get(category, ())) for category in BranchCategory}
        jobs = {category: tuple(self.jobs.get(category, ())) for category in BranchCategory}

        for category in BranchCategory:
            remaining = iter(git[category])
            if not all(name in remaining for name in jobs[category]):
                raise ValueError(
                    f"{self.repository}: {category.value} job branches are not a "
                    f"subsequence of its git branches"
                )

        object.__setattr__(self, "git", git)
        object.__setattr__(self, "jobs", jobs)

    def git_count(self, category: BranchCategory) -> int:
        return len(self.git[category])

    def job_count(self, category: BranchCategory) -> int:
        return len(self.jobs[category])

    @property
    def total_git(self) -> int:
        return sum(self.git_count(category) for category in BranchCategory)

    @property
    def total_jobs(self) -> int:
        return sum(self.job_count(category) for category in BranchCategory)

    def untracked(self, category: BranchCategory) -> list[str]:
        """Branch names of the category without a CI job, in source order."""
        with_job = set(self.jobs[category])
        return [name for name in self.git[category] if name not in with_job]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.repository,
            "job_url": self.job_url,
            "branches_url": self.branches_url,
            "branches": {
                category.value: {
                    "jobs": list(self.jobs[category]),
                    "git": list(self.git[category]),
                }
                for category in BranchCategory
            },
            "totals": {"jobs": self.total_jobs, "git": self.total_git},
        }


@dataclass(frozen=True)
class FleetTotals:
    """Per-category job and git branch counts summed over a fleet."""

    jobs: Mapping[BranchCategory, int]
    git: Mapping[BranchCategory, int]

    def job_count(self, category: BranchCategory) -> int:
        return self.jobs.get(category, 0)

    def git_count(self, category: BranchCategory) -> int:
        return self.git.get(category, 0)

    @property
    def total_jobs(self) -> int:
        return sum(self.jobs.values())

    @property
    def total_git(self) -> int:
        return sum(self.git.values())

    def to_dict(self) -> dict[str, Any]:
        totals: dict[str, Any] = {
            category.value: {
                "jobs": self.job_count(category),
                "git": self.git_count(category),
            }
            for category in BranchCategory
        }
        totals["total"] = {"jobs": self.total_jobs, "git": self.total_git}
        return totals


# =============================================================================
# REPOSITORY LISTING
# =============================================================================


def list_repositories(
    document: HtmlDocument, table_id: str, excluded: Collection[str] = ()
) -> list[str]:
    """
    Extract repository names from the Gitbox index page.

    Reads the first-column links of the project's table (``id=table_id``),
    skipping disabled rows, excluded names and duplicates. Names are returned
    without their ``.git`` suffix, in document order.

    Raises:
        ListingFailure: when the project table is missing
    """
    table = document.find_by_id(table_id)
    if table is None:
        raise ListingFailure(
            f"No repository table with id '{table_id}' in {document.url or 'index document'}"
        )

    names: list[str] = []
    # Index tables may omit <tbody>, which lxml does not add
    for row in table.select("tr"):
        if "disabled" in (row.get("class") or []):
            continue
        anchor = row.select_one("td:first-child a")
        if anchor is None:
            continue

        name = anchor.get_text(strip=True).split(".git")[0]
        if name and name not in excluded and name not in names:
            names.append(name)

    return names


# =============================================================================
# BRANCH CLASSIFICATION AND COVERAGE MATCHING
# =============================================================================


def classify_branch(
    repository: str, branch_name: str, issue_projects: Mapping[str, str]
) -> BranchCategory:
    """
    Assign a branch to its category. Rules are checked in order, first match wins:

    1. the default branch name, exactly
    2. an issue-tracker branch: the upper-cased name starts with the
       repository's (upper-cased) issue prefix followed by ``-``
    3. a dependabot branch (``dependabot/`` prefix, case-sensitive)
    4. anything else
    """
    if branch_name == DEFAULT_BRANCH:
        return BranchCategory.MASTER

    prefix = issue_projects.get(repository)
    if prefix and branch_name.upper().startswith(prefix.upper() + "-"):
        return BranchCategory.ISSUE_LINKED

    if branch_name.startswith(DEPENDABOT_PREFIX):
        return BranchCategory.DEPENDENCY_BOT

    return BranchCategory.OTHER


def branch_job_id(branch_name: str) -> str:
    """
    Element id Jenkins gives the job of a branch on its multibranch page.

    ``job_`` plus the branch name, form-encoded (space as ``+``, only
    ``A-Za-z0-9.-*_`` left as-is), so ``dependabot/x`` becomes
    ``job_dependabot%2Fx``. The default branch is always ``job_master``.

    Raises:
        EncodingFailure: when the name is not encodable as UTF-8
    """
    if branch_name == DEFAULT_BRANCH:
        return MASTER_JOB_ID

    try:
        encoded = quote_plus(JOB_ID_PREFIX + branch_name, safe="*")
    except UnicodeEncodeError as e:
        raise EncodingFailure(f"Cannot encode branch name {branch_name!r}: {e}")
    return encoded.replace("~", "%7E")


def has_job(branch_name: str, job_ids: Collection[str]) -> bool:
    """True when job_ids contains the job id of the branch."""
    try:
        return branch_job_id(branch_name) in job_ids
    except EncodingFailure as e:
        logging.debug(f"Treating branch as not built: {e}")
        return False


# =============================================================================
# REPOSITORY RECONCILIATION
# =============================================================================


def reconcile_repository(
    repository: str,
    branch_names: Iterable[str],
    job_ids: Collection[str],
    job_url: str,
    issue_projects: Mapping[str, str],
    branches_url: str = "",
) -> Result:
    """Classify and coverage-match every branch of one repository, in supplied order."""
    git: dict[BranchCategory, list[str]] = {category: [] for category in BranchCategory}
    jobs: dict[BranchCategory, list[str]] = {category: [] for category in BranchCategory}

    for name in branch_names:
        record = BranchRecord(
            name=name,
            category=classify_branch(repository, name, issue_projects),
            has_job=has_job(name, job_ids),
        )
        git[record.category].append(record.name)
        if record.has_job:
            jobs[record.category].append(record.name)

    return Result(
        repository=repository,
        job_url=job_url,
        branches_url=branches_url,
        git={category: tuple(names) for category, names in git.items()},
        jobs={category: tuple(names) for category, names in jobs.items()},
    )


def branch_names_from_document(document: HtmlDocument) -> list[str]:
    """
    Branch names listed in a Gitbox heads page.

    Raises:
        StructureNotFound: when the page has no branch table
    """
    table = document.find_branch_table()
    if table is None:
        raise StructureNotFound(f"No branch table in {document.url or 'document'}")

    names = []
    for row in document.rows(table):
        name = document.name(row)
        if name:
            names.append(name)
    return names


# =============================================================================
# AGGREGATION AND RANKING
# =============================================================================


def aggregate_results(results: Iterable[Result]) -> tuple[FleetTotals, list[Result]]:
    """
    Sum per-category counts over all results and rank them.

    Ranking is descending by total job count, then total git branch count;
    ties keep their incoming order.
    """
    results = list(results)
    jobs = {category: 0 for category in BranchCategory}
    git = {category: 0 for category in BranchCategory}

    for result in results:
        for category in BranchCategory:
            jobs[category] += result.job_count(category)
            git[category] += result.git_count(category)

    ordered = sorted(results, key=lambda r: (r.total_jobs, r.total_git), reverse=True)
    return FleetTotals(jobs=jobs, git=git), ordered


# =============================================================================
# OUTPUT RENDERING
# =============================================================================


class ReportRenderer:
    """Handles rendering of aggregated data into various output formats."""

    CATEGORY_HEADINGS = {
        BranchCategory.MASTER: "master",
        BranchCategory.ISSUE_LINKED: "Issue branches",
        BranchCategory.DEPENDENCY_BOT: "Dependabot",
        BranchCategory.OTHER: "Other",
    }

    def __init__(self, config: dict[str, Any], logger: logging.Logger) -> None:
        self.config = config
        self.logger = logger

    def render_json_report(self, data: dict[str, Any], output_path: Path) -> None:
        """Write the canonical JSON report."""
        self.logger.info(f"Writing JSON report to {output_path}")

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

    def render_markdown_report(self, data: dict[str, Any], output_path: Path) -> str:
        """Generate Markdown report from JSON data."""
        self.logger.info(f"Generating Markdown report to {output_path}")

        markdown_content = self._generate_markdown_content(data)

        with open(output_path, "w", encoding="utf-8") as f:
            f.write(markdown_content)

        return markdown_content

    def render_html_report(self, data: dict[str, Any], output_path: Path) -> None:
        """Generate the HTML report, with branch names in hover titles."""
        self.logger.info(f"Generating HTML report at {output_path}")

        html_content = self._generate_html_content(data)

        with open(output_path, "w", encoding="utf-8") as f:
            f.write(html_content)

    # -- cell values ----------------------------------------------------------

    def empty_cell(self, category: BranchCategory, repo: dict[str, Any]) -> str:
        """
        Symbol for a category without branches.

        For dependabot the symbol reflects the config check: ``-`` when a
        config exists (or the check is disabled), empty when it is absent,
        ``_`` when the check failed.
        """
        if category is not BranchCategory.DEPENDENCY_BOT:
            return "-"

        status = repo.get("dependabot_config")
        if status == "absent":
            return ""
        if status == "error":
            return "_"
        return "-"

    @staticmethod
    def counts(repo: dict[str, Any], category: BranchCategory) -> tuple[int, int]:
        branches = repo["branches"][category.value]
        return len(branches["jobs"]), len(branches["git"])

    def _generate_markdown_content(self, data: dict[str, Any]) -> str:
        """Generate complete Markdown content from JSON data."""
        sections = [
            self._generate_title_section(data),
            self._generate_branches_section(data),
        ]
        if data.get("errors"):
            sections.append(self._generate_skipped_section(data))
        return "\n\n".join(sections) + "\n"

    def _generate_title_section(self, data: dict[str, Any]) -> str:
        project = data.get("project", "Unknown")
        generated_at = data.get("generated_at", "")
        return (
            f"# List Branches: {project}\n\n"
            f"**Generated:** {generated_at}  \n"
            f"**Schema Version:** {data.get('schema_version', SCHEMA_VERSION)}"
        )

    def _generate_branches_section(self, data: dict[str, Any]) -> str:
        lines = [
            "## Branches",
            "",
            "Values are shown as `jobs / branches`, because not all branches end up "
            "in Jenkins: this depends on the existence of the Jenkinsfile.",
            f"For Dependabot an empty field means there's no `{DEPENDABOT_CONFIG}`.",
            "",
        ]

        headings = ["Repository", "Issues"] + [
            self.CATEGORY_HEADINGS[category] for category in BranchCategory
        ] + ["Total"]
        lines.append("| " + " | ".join(headings) + " |")
        lines.append("|" + "|".join("---" for _ in headings) + "|")

        for repo in data.get("repositories", []):
            cells = [repo["name"], repo.get("issue_project") or ""]
            for category in BranchCategory:
                jobs, git = self.counts(repo, category)
                if category is BranchCategory.MASTER:
                    cells.append(f"{jobs} / {git}")
                elif git == 0:
                    cells.append(self.empty_cell(category, repo))
                else:
                    cells.append(f"**{jobs} / {git}**")
            cells.append(f"{repo['totals']['jobs']} / {repo['totals']['git']}")
            lines.append("| " + " | ".join(cells) + " |")

        totals = data.get("totals", {})
        if totals:
            cells = ["**Total**", ""]
            for category in BranchCategory:
                counts = totals.get(category.value, {"jobs": 0, "git": 0})
                cells.append(f"{counts['jobs']} / {counts['git']}")
            cells.append(f"{totals['total']['jobs']} / {totals['total']['git']}")
            lines.append("| " + " | ".join(cells) + " |")

        return "\n".join(lines)

    def _generate_skipped_section(self, data: dict[str, Any]) -> str:
        lines = ["## Skipped Repositories", "", "| Repository | Reason |", "|---|---|"]
        for error in data.get("errors", []):
            lines.append(f"| {error['repo']} | {error['error']} |")
        return "\n".join(lines)

    def _link(self, url: str, text: str, title: Optional[str] = None) -> str:
        title_attr = f' title="{html.escape(title)}"' if title else ""
        return f'<a href="{html.escape(url)}"{title_attr}>{html.escape(text)}</a>'

    def _html_category_cell(self, repo: dict[str, Any], category: BranchCategory) -> str:
        branches = repo["branches"][category.value]
        jobs, git = len(branches["jobs"]), len(branches["git"])

        if category is BranchCategory.MASTER:
            return f"{jobs} / {git}"
        if git == 0:
            return html.escape(self.empty_cell(category, repo))

        untracked = [name for name in branches["git"] if name not in branches["jobs"]]
        git_title = (
            "-- non-Jenkins branches --\n" + "\n".join(untracked) if untracked else None
        )
        return (
            "<b>"
            + self._link(repo["job_url"], str(jobs), "\n".join(branches["jobs"]))
            + " / "
            + self._link(repo.get("branches_url") or repo["job_url"], str(git), git_title)
            + "</b>"
        )

    def _generate_html_content(self, data: dict[str, Any]) -> str:
        github_url = self.config.get("github", {}).get("url", "").rstrip("/") + "/"
        issue_url = self.config.get("issue_tracker", {}).get("url", "").rstrip("/") + "/"

        header_cells = ["Repository", "Issues"] + [
            self.CATEGORY_HEADINGS[category] for category in BranchCategory
        ] + ["Total"]
        rows = ["<tr>" + "".join(f"<th>{h}</th>" for h in header_cells) + "</tr>"]

        for repo in data.get("repositories", []):
            issue_project = repo.get("issue_project")
            cells = [
                self._link(github_url + repo["name"], repo["name"]),
                self._link(issue_url + issue_project, issue_project) if issue_project else "",
            ]
            cells.extend(self._html_category_cell(repo, category) for category in BranchCategory)
            cells.append(f"{repo['totals']['jobs']} / {repo['totals']['git']}")
            rows.append("<tr>" + "".join(f"<td>{c}</td>" for c in cells) + "</tr>")

        totals = data.get("totals", {})
        if totals:
            cells = ["Total", ""]
            for category in BranchCategory:
                counts = totals.get(category.value, {"jobs": 0, "git": 0})
                cells.append(f"{counts['jobs']} / {counts['git']}")
            cells.append(f"{totals['total']['jobs']} / {totals['total']['git']}")
            rows.append("<tr>" + "".join(f"<th>{c}</th>" for c in cells) + "</tr>")

        project = html.escape(str(data.get("project", "")))
        table = "\n".join(rows)
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>List Branches: {project}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', 'Roboto', sans-serif;
            max-width: 1200px;
            margin: 0 auto;
            padding: 20px;
            color: #333333;
        }}

        table {{
            width: 100%;
            border-collapse: collapse;
            font-size: 0.9em;
        }}

        th, td {{
            border: 1px solid #dddddd;
            padding: 6px 10px;
            text-align: left;
        }}
    </style>
</head>
<body>
<h1>List Branches: {project}</h1>
<p>Values are shown as <code>jenkinsBranches / gitBranches</code>, because not all branches end up in Jenkins,
this depends on the existence of the Jenkinsfile.<br>
Hover over the values to see branch names, values link to its URL to Jenkins or Gitbox.<br>
For Dependabot an empty field means there's no <code>{DEPENDABOT_CONFIG}</code>.</p>
<table>
{table}
</table>
<p><small>Generated {html.escape(str(data.get("generated_at", "")))}</small></p>
</body>
</html>
"""


def save_resolved_config(config: Dict[str, Any], output_path: Path) -> None:
    """Save the resolved configuration to a JSON file."""
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2, default=str)


# =============================================================================
# MAIN ORCHESTRATION AND CLI ENTRY POINT
# =============================================================================


class BranchReporter:
    """Main orchestrator for branch reporting."""

    def __init__(
        self,
        config: dict[str, Any],
        logger: logging.Logger,
        fetcher: Optional[DocumentFetcher] = None,
        dependabot_checker: Optional[DependabotConfigChecker] = None,
    ) -> None:
        self.config = config
        self.logger = logger

        self.gitbox_url = config.get("gitbox", {}).get("url", "").rstrip("/")
        self.project_table_id = config.get("gitbox", {}).get("project_table_id") or config.get("project", "")
        self.jobs_base_url = config.get("jenkins", {}).get("jobs_base_url", "").rstrip("/") + "/"
        self.issue_projects: dict[str, str] = dict(config.get("issue_projects") or {})
        self.excluded = frozenset(config.get("excluded_repositories") or [])

        self._owns_fetcher = fetcher is None
        if fetcher is None:
            http_config = config.get("http", {})
            fetcher = DocumentFetcher(
                timeout=http_config.get("timeout", 30.0),
                retries=http_config.get("retries", 3),
                backoff_factor=http_config.get("backoff_factor", 1.0),
            )
        self.fetcher = fetcher

        if dependabot_checker is None and config.get("report", {}).get("check_dependabot_config", True):
            dependabot_checker = DependabotConfigChecker(
                self.fetcher, config.get("github", {}).get("url", "https://github.com/")
            )
        self.dependabot_checker = dependabot_checker

        self.renderer = ReportRenderer(config, logger)
        self.report_data: Optional[dict[str, Any]] = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self) -> None:
        if self._owns_fetcher:
            self.fetcher.close()

    def branches_url(self, repository: str) -> str:
        return f"{self.gitbox_url}?p={repository}.git;a=heads"

    def job_url(self, repository: str) -> str:
        return self.jobs_base_url + repository

    def list_repositories(self) -> list[str]:
        """
        Repository names of the project from the Gitbox index.

        Raises:
            ListingFailure: when the index cannot be fetched or has no project table
        """
        try:
            document = self.fetcher.fetch(self.gitbox_url, service="gitbox")
        except FetchFailure as e:
            raise ListingFailure(f"Failed to extract repository names from Gitbox: {e}") from e

        repositories = list_repositories(document, self.project_table_id, self.excluded)
        self.logger.info(f"Found {len(repositories)} repositories in table '{self.project_table_id}'")
        return repositories

    def reconcile(self, repository: str) -> Result:
        """
        Fetch the branch and job pages of one repository and reconcile them.

        Raises:
            StructureNotFound: when the Gitbox page has no branch table
            FetchFailure: when either page cannot be fetched
        """
        branches_url = self.branches_url(repository)
        job_url = self.job_url(repository)

        branch_names = branch_names_from_document(
            self.fetcher.fetch(branches_url, service="gitbox")
        )
        job_ids = self.fetcher.fetch(job_url, service="jenkins").element_ids(JOB_ID_PREFIX)

        self.logger.debug(
            f"{repository}: {len(branch_names)} branches, {len(job_ids)} Jenkins jobs"
        )
        return reconcile_repository(
            repository,
            branch_names,
            job_ids,
            job_url,
            self.issue_projects,
            branches_url=branches_url,
        )

    def check_dependabot_config(self, repository: str) -> Optional[str]:
        """``present``/``absent``/``error``, or None when checking is disabled."""
        if self.dependabot_checker is None:
            return None
        try:
            return "present" if self.dependabot_checker.has_config(repository) else "absent"
        except FetchFailure as e:
            self.logger.warning(f"Could not check dependabot config for {repository}: {e}")
            return "error"

    def _reconcile_single_repository(self, repository: str) -> dict[str, Any]:
        """Reconcile one repository, turning per-repository failures into error records."""
        try:
            result = self.reconcile(repository)
        except StructureNotFound as e:
            self.logger.warning(f"Ignoring {repository}: {e}")
            return {"error": str(e), "repo": repository, "category": "structure_not_found"}
        except FetchFailure as e:
            self.logger.warning(f"Failed to read status for {repository}: {e}")
            return {"error": str(e), "repo": repository, "category": "fetch_failure"}
        except Exception as e:
            self.logger.error(f"Error reconciling {repository}: {e}")
            return {"error": str(e), "repo": repository, "category": "reconciliation"}

        outcome: dict[str, Any] = {"result": result}
        if result.git_count(BranchCategory.DEPENDENCY_BOT) == 0:
            outcome["dependabot_config"] = self.check_dependabot_config(repository)
        return outcome

    def _reconcile_repositories_parallel(self, repositories: list[str]) -> list[dict[str, Any]]:
        """Reconcile repositories on a bounded pool; outcomes keep listing order."""
        max_workers = self.config.get("performance", {}).get("max_workers", 8)

        if max_workers == 1:
            return [self._reconcile_single_repository(repo) for repo in repositories]

        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(self._reconcile_single_repository, repositories))

    def analyze_repositories(self) -> dict[str, Any]:
        """
        Main reconciliation workflow.

        Raises:
            ListingFailure: when the repository set cannot be determined
        """
        self.logger.info(f"Starting branch reconciliation for {self.config.get('project')}")

        report_data: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "project": self.config.get("project"),
            "config_digest": compute_config_digest(self.config),
            "script_version": SCRIPT_VERSION,
            "repositories": [],
            "totals": {},
            "errors": [],
        }

        repositories = self.list_repositories()
        outcomes = self._reconcile_repositories_parallel(repositories)

        results: list[Result] = []
        dependabot_status: dict[str, Optional[str]] = {}
        for outcome in outcomes:
            if "error" in outcome:
                report_data["errors"].append(outcome)
                continue
            result = outcome["result"]
            results.append(result)
            dependabot_status[result.repository] = outcome.get("dependabot_config")

        totals, ordered = aggregate_results(results)

        repositories_data = []
        for result in ordered:
            repo_data = result.to_dict()
            repo_data["issue_project"] = self.issue_projects.get(result.repository)
            repo_data["dependabot_config"] = dependabot_status.get(result.repository)
            repositories_data.append(repo_data)

        report_data["repositories"] = repositories_data
        report_data["totals"] = totals.to_dict()

        self.logger.info(
            f"Reconciliation complete: {len(results)} repositories, "
            f"{totals.total_jobs} / {totals.total_git} branches built, "
            f"{len(report_data['errors'])} skipped"
        )
        return report_data

    def generate_reports(self, output_dir: Path, include_html: bool = True) -> dict[str, Path]:
        """
        Generate complete reports (JSON, Markdown, HTML).

        Returns paths to generated files.
        """
        output_dir.mkdir(parents=True, exist_ok=True)

        report_data = self.analyze_repositories()

        generated_files = {
            "json": output_dir / "report_raw.json",
            "markdown": output_dir / "report.md",
            "config": output_dir / "config_resolved.json",
        }

        self.renderer.render_json_report(report_data, generated_files["json"])
        self.renderer.render_markdown_report(report_data, generated_files["markdown"])

        if include_html:
            generated_files["html"] = output_dir / "report.html"
            self.renderer.render_html_report(report_data, generated_files["html"])

        save_resolved_config(self.config, generated_files["config"])

        self.report_data = report_data
        return generated_files


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Report which repository branches are built by CI jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --project maven
  %(prog)s --project maven --config-dir ./config --output-dir ./reports
  %(prog)s --project maven --max-workers 1 --no-dependabot-check --verbose
        """,
    )

    # Required arguments
    parser.add_argument(
        "--project",
        required=True,
        help="Project name (used for config override and output naming)",
    )

    # Optional configuration
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help=f"Configuration directory (default: {DEFAULT_CONFIG_DIR})",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=DEFAULT_OUTPUT_DIR,
        help=f"Output directory (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        help="Override the number of repositories reconciled concurrently",
    )

    # Output options
    parser.add_argument(
        "--no-html", action="store_true", help="Skip HTML report generation"
    )
    parser.add_argument(
        "--no-dependabot-check",
        action="store_true",
        help="Skip the GitHub check for dependabot configuration files",
    )

    # Behavioral options
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--validate-only", action="store_true", help="Validate configuration and exit"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from configuration",
    )

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    try:
        args = parse_arguments(argv)

        # Command line overrides are applied before validation
        overrides: dict[str, Any] = {}
        if args.max_workers is not None:
            overrides["performance"] = {"max_workers": args.max_workers}
        if args.no_dependabot_check:
            overrides["report"] = {"check_dependabot_config": False}
        if args.log_level:
            overrides["logging"] = {"level": args.log_level}
        elif args.verbose:
            overrides["logging"] = {"level": "DEBUG"}

        try:
            config = load_configuration(args.config_dir, args.project)
            config = deep_merge_dicts(config, overrides)
            validate_configuration(config)
        except Exception as e:
            print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
            return 1

        log_config = config.get("logging", {})
        logger = setup_logging(
            level=log_config.get("level", "INFO"),
            include_timestamps=log_config.get("include_timestamps", True),
        )

        logger.info(f"Branch Reporting System v{SCRIPT_VERSION}")
        logger.info(f"Project: {args.project}")
        logger.info(f"Configuration digest: {compute_config_digest(config)[:12]}...")

        if args.validate_only:
            logger.info("Configuration validation successful")
            print(f"✅ Configuration valid for project '{args.project}'")
            print(f"   - Issue projects: {len(config.get('issue_projects', {}))}")
            print(f"   - Excluded repositories: {len(config.get('excluded_repositories', []))}")
            return 0

        project_output_dir = args.output_dir / args.project

        with BranchReporter(config, logger) as reporter:
            try:
                generated_files = reporter.generate_reports(
                    project_output_dir, include_html=not args.no_html
                )
            except ListingFailure as e:
                logger.error(f"❌ {e}")
                return 1

        report_data = reporter.report_data
        totals = report_data["totals"]["total"]
        error_count = len(report_data["errors"])

        print("\n✅ Report generation completed successfully!")
        print(f"   - Repositories: {len(report_data['repositories'])}")
        print(f"   - Branches built: {totals['jobs']} / {totals['git']}")
        print(f"   - Skipped: {error_count}")
        print(f"   - Output directory: {project_output_dir}")

        if error_count > 0:
            print(f"   - Check {generated_files['json']} for error details")

        api_stats_output = api_stats.format_console_output()
        if api_stats_output:
            print(api_stats_output)

        api_stats.write_to_step_summary()

        return 0

    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
