#!/usr/bin/env python3
"""
Asana Custom Field Migrator
===========================
Single-script migration: copies the value of one single-select custom field
onto another custom field for every task of an Asana project.

How it works:
  CSV mapping file        → {old enum option gid: new enum option gid}
  Every task in project   → fetched page by page (100 per page)
  Old field value mapped  → new field set via PUT /tasks/{gid}
  Old field unset/unknown → task skipped

The old field is never modified.

Configuration (environment or a .env file in the working directory):
    ASANA_TOKEN, ASANA_PROJECT_GID, OLD_FIELD_GID, NEW_FIELD_GID,
    CSV_MAPPING_FILE
    ASANA_API_URL (optional), LOG_LEVEL (optional)

Usage:
    python asana_field_migrator.py
"""

import csv
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from dotenv import load_dotenv

ASANA_API_URL = "https://app.asana.com/api/1.0"

# Fields requested for every task; custom_fields carries gid + enum_value
TASK_OPT_FIELDS = "name,custom_fields"
PAGE_LIMIT = 100

# Fixed pause after every attempted update (Asana rate limits)
UPDATE_DELAY_SECONDS = 0.2

REQUEST_TIMEOUT = 60

MAPPING_COLUMNS = ("old_value", "new_value")

REQUIRED_ENV = {
    "token":            "ASANA_TOKEN",
    "project_gid":      "ASANA_PROJECT_GID",
    "old_field_gid":    "OLD_FIELD_GID",
    "new_field_gid":    "NEW_FIELD_GID",
    "mapping_file":     "CSV_MAPPING_FILE",
}

log = logging.getLogger("asana_field_migrator")


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class MigrationError(Exception):
    """Base class for every error raised by the migrator."""


class ConfigError(MigrationError):
    """Missing/invalid configuration or unreadable mapping file."""


class RemoteError(MigrationError):
    """Non-success answer from the Asana API."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class UpdateFailure(RemoteError):
    """A single task update was rejected; recoverable."""


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MigrationConfig:
    token: str
    project_gid: str
    old_field_gid: str
    new_field_gid: str
    mapping_file: str
    api_url: str = ASANA_API_URL

    @classmethod
    def from_env(cls, environ=None) -> "MigrationConfig":
        """
        Build the config from environment variables.
        Every required variable is checked before raising, so a single
        ConfigError lists all of the missing names.
        """
        env = os.environ if environ is None else environ
        values: dict = {}
        missing: list = []
        for attr, name in REQUIRED_ENV.items():
            value = (env.get(name) or "").strip()
            if not value:
                missing.append(name)
            values[attr] = value
        if missing:
            raise ConfigError("Missing required environment variable(s): " + ", ".join(missing))
        api_url = (env.get("ASANA_API_URL") or "").strip() or ASANA_API_URL
        return cls(api_url=api_url.rstrip("/"), **values)


@dataclass
class MigrationCounters:
    tasks_fetched: int = 0
    old_field_present: int = 0
    old_field_set: int = 0
    attempted: int = 0
    succeeded: int = 0


# ─────────────────────────────────────────────────────────────────────────────
# Mapping loader
# ─────────────────────────────────────────────────────────────────────────────

def load_mapping(path: str) -> dict:
    """
    Read the CSV mapping file → {old_enum_gid: new_enum_gid}.

    Rows with an empty old_value are ignored; on duplicate old_value rows the
    last one wins.
    """
    try:
        with open(path, encoding="utf-8-sig", newline="") as fh:
            reader = csv.DictReader(fh)
            header = [(name or "").strip() for name in (reader.fieldnames or [])]
            missing = [col for col in MAPPING_COLUMNS if col not in header]
            if missing:
                raise ConfigError(
                    f"Mapping file {path} must have a header with "
                    f"{', '.join(MAPPING_COLUMNS)} (missing: {', '.join(missing)})"
                )
            reader.fieldnames = header
            mapping: dict = {}
            for row in reader:
                old_value = (row.get("old_value") or "").strip()
                if not old_value:
                    continue
                mapping[old_value] = (row.get("new_value") or "").strip()
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise ConfigError(f"Cannot read mapping file {path}: {exc}") from exc
    return mapping


# ─────────────────────────────────────────────────────────────────────────────
# Asana REST API client
# ─────────────────────────────────────────────────────────────────────────────

class AsanaClient:
    def __init__(self, token: str, base_url: str = ASANA_API_URL) -> None:
        self.base = base_url.rstrip("/")
        self._auth = f"Bearer {token}"

    def _request(self, method: str, path: str, *, json_body=None, params=None,
                 error_cls=RemoteError) -> dict:
        url = f"{self.base}/{path.lstrip('/')}"
        headers = {"Authorization": self._auth, "Accept": "application/json"}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        try:
            resp = requests.request(method, url, headers=headers,
                                    json=json_body, params=params, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.ConnectionError as exc:
            raise error_cls(f"Connection error: {url}") from exc
        except requests.exceptions.Timeout as exc:
            raise error_cls(f"Timeout: {url}") from exc
        except requests.exceptions.RequestException as exc:
            raise error_cls(f"Request failed: {method} {url}: {exc}") from exc
        if resp.status_code == 401:
            raise error_cls("Asana authentication failed (401) — check ASANA_TOKEN.",
                            status=401, body=resp.text)
        if not resp.ok:
            raise error_cls(f"Asana {resp.status_code} {method} {path}: {resp.text[:400]}",
                            status=resp.status_code, body=resp.text)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise error_cls(f"Asana {resp.status_code} {method} {path}: invalid JSON body",
                            status=resp.status_code, body=resp.text) from exc

    def get_tasks_page(self, project_gid: str, offset: Optional[str] = None) -> dict:
        """One page of GET /tasks → {"data": [...], "next_page": {...} | None}."""
        params = {"project": project_gid, "opt_fields": TASK_OPT_FIELDS, "limit": PAGE_LIMIT}
        if offset:
            params["offset"] = offset
        return self._request("GET", "/tasks", params=params)

    def update_task_custom_field(self, task_gid: str, field_gid: str, enum_gid: str) -> dict:
        """Set a single custom field on a task. Raises UpdateFailure when rejected."""
        body = {"data": {"custom_fields": {field_gid: enum_gid}}}
        return self._request("PUT", f"/tasks/{task_gid}", json_body=body,
                             error_cls=UpdateFailure)


# ─────────────────────────────────────────────────────────────────────────────
# Task helpers
# ─────────────────────────────────────────────────────────────────────────────

def find_field(task: dict, field_gid: str) -> Optional[dict]:
    """First custom-field entry on the task with this gid, or None."""
    for field in task.get("custom_fields") or []:
        if field.get("gid") == field_gid:
            return field
    return None


def selected_enum_gid(field: Optional[dict]) -> Optional[str]:
    if not field:
        return None
    enum_value = field.get("enum_value") or {}
    return enum_value.get("gid") or None


# ─────────────────────────────────────────────────────────────────────────────
# Task fetcher
# ─────────────────────────────────────────────────────────────────────────────

def fetch_all_project_tasks(client: AsanaClient, project_gid: str, old_field_gid: str,
                            logger: logging.Logger = log) -> list:
    """
    Fetch every task of the project, following next_page.offset until a page
    comes back without one. Any failed page raises RemoteError and nothing
    is returned.
    """
    tasks: list = []
    offset: Optional[str] = None
    page_count = 0

    logger.info(f"Starting to fetch tasks for project: {project_gid}")
    while True:
        try:
            page = client.get_tasks_page(project_gid, offset)
        except RemoteError as exc:
            logger.error(f"Error fetching tasks: {exc.body or exc}")
            raise
        data = page.get("data") or []
        page_count += 1
        logger.info(f"Received page {page_count} with {len(data)} tasks")
        tasks.extend(data)

        offset = (page.get("next_page") or {}).get("offset")
        if not offset:
            logger.info("No more pages. Finished fetching all tasks.")
            break
        logger.info("More tasks to fetch, preparing next request")

    logger.info(f"Total tasks fetched: {len(tasks)}")
    report_old_field_coverage(tasks, old_field_gid, logger)
    return tasks


def report_old_field_coverage(tasks: list, old_field_gid: str,
                              logger: logging.Logger = log) -> tuple:
    """Log how many tasks carry the old field and how many have it set → (present, set)."""
    logger.info(f"Checking tasks for old field: {old_field_gid}")
    present = with_value = 0
    for task in tasks:
        field = find_field(task, old_field_gid)
        if field is None:
            continue
        present += 1
        enum_gid = selected_enum_gid(field)
        if enum_gid:
            with_value += 1
            logger.info(f'Task "{task.get("name")}" ({task.get("gid")}) '
                        f"has the old field with value: {enum_gid}")
        else:
            logger.info(f'Task "{task.get("name")}" ({task.get("gid")}) '
                        f"has the old field but no value set.")

    logger.info(f"Tasks that have the old field ({old_field_gid}) present: {present}")
    logger.info(f"Tasks that have the old field set with a value: {with_value}")
    if with_value == 0:
        logger.warning("No tasks have the old field set with a value. Updates will not occur.")
    else:
        logger.info("Some tasks have the old field set. Proceeding with mapping and updates.")
    return present, with_value


# ─────────────────────────────────────────────────────────────────────────────
# Task updater
# ─────────────────────────────────────────────────────────────────────────────

def update_task(client: AsanaClient, new_field_gid: str, task_gid: str, new_enum_gid: str,
                logger: logging.Logger = log) -> bool:
    """Write new_enum_gid into the new field. Returns False instead of raising on failure."""
    try:
        client.update_task_custom_field(task_gid, new_field_gid, new_enum_gid)
    except UpdateFailure as exc:
        logger.error(f"Failed to update task {task_gid}: {exc.body or exc}")
        return False
    logger.info(f"Successfully updated task {task_gid} to {new_enum_gid}")
    return True


# ─────────────────────────────────────────────────────────────────────────────
# Migration driver
# ─────────────────────────────────────────────────────────────────────────────

def migrate_tasks(tasks: list, mapping: dict, old_field_gid: str,
                  updater: Callable[[str, str], bool], *,
                  delay: float = UPDATE_DELAY_SECONDS,
                  sleep: Callable[[float], None] = time.sleep,
                  logger: logging.Logger = log) -> MigrationCounters:
    """
    Visit every task once, in order, and push the mapped value for each task
    whose old field holds a known option. `updater(task_gid, new_enum_gid)`
    must return a bool; the pause follows every attempted update.
    """
    counters = MigrationCounters(tasks_fetched=len(tasks))

    for task in tasks:
        task_gid = task.get("gid")
        logger.info(f"Processing task: {task.get('name')} (GID: {task_gid})")

        if not task.get("custom_fields"):
            logger.info("  No custom fields on this task. Skipping.")
            continue

        field = find_field(task, old_field_gid)
        if field is None:
            continue
        counters.old_field_present += 1

        old_enum_gid = selected_enum_gid(field)
        if not old_enum_gid:
            logger.info("  Old field is present but has no value. Skipping.")
            continue
        counters.old_field_set += 1

        new_enum_gid = mapping.get(old_enum_gid)
        if not new_enum_gid:
            logger.info(f"  No mapping found for old enum GID {old_enum_gid}. Skipping task.")
            continue

        logger.info(f"  Mapping found. Old enum GID {old_enum_gid} -> New enum GID {new_enum_gid}")
        counters.attempted += 1
        if updater(task_gid, new_enum_gid):
            counters.succeeded += 1
        else:
            logger.info(f"  Failed to update task {task_gid}. Check error logs above.")
        sleep(delay)

    logger.info(f"Done processing all tasks. Attempted updates: {counters.attempted}, "
                f"Successful updates: {counters.succeeded}")
    return counters


def run_migration(config: MigrationConfig, client: Optional[AsanaClient] = None,
                  logger: logging.Logger = log) -> MigrationCounters:
    mapping = load_mapping(config.mapping_file)
    logger.info(f"Mapping loaded: {len(mapping)} entries from {config.mapping_file}")

    client = client or AsanaClient(config.token, config.api_url)
    tasks = fetch_all_project_tasks(client, config.project_gid, config.old_field_gid, logger)
    logger.info(f"Fetched {len(tasks)} tasks in total.")

    def _update(task_gid: str, new_enum_gid: str) -> bool:
        return update_task(client, config.new_field_gid, task_gid, new_enum_gid, logger)

    return migrate_tasks(tasks, mapping, config.old_field_gid, _update, logger=logger)


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def resolve_log_level(name: str) -> int:
    """LOG_LEVEL name → logging level. Raises ConfigError for unknown names."""
    level = logging.getLevelName((name or "INFO").strip().upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown LOG_LEVEL: {name!r}")
    return level


def main() -> None:
    load_dotenv()
    logging.basicConfig(stream=sys.stdout, level=logging.INFO, format="%(message)s")

    W = 80
    log.info("═" * W)
    log.info("  ASANA CUSTOM FIELD MIGRATION".center(W))
    log.info("═" * W)

    try:
        logging.getLogger().setLevel(resolve_log_level(os.environ.get("LOG_LEVEL", "INFO")))
        config = MigrationConfig.from_env()
        log.info(f"  Project:    {config.project_gid}")
        log.info(f"  Old field:  {config.old_field_gid}")
        log.info(f"  New field:  {config.new_field_gid}")
        log.info(f"  Mapping:    {config.mapping_file}")
        counters = run_migration(config)
    except KeyboardInterrupt:
        log.warning("\n\nAborted.")
        sys.exit(130)
    except MigrationError as exc:
        log.error(f"Error: {exc}")
        sys.exit(1)
    except Exception:
        log.exception("Error: migration aborted")
        sys.exit(1)

    log.info("═" * W)
    log.info(f"  Tasks fetched:            {counters.tasks_fetched}")
    log.info(f"  Old field present:        {counters.old_field_present}")
    log.info(f"  Old field set:            {counters.old_field_set}")
    log.info(f"  Updates attempted:        {counters.attempted}")
    log.info(f"  Updates succeeded:        {counters.succeeded}")
    log.info("═" * W)


if __name__ == "__main__":
    main()
