"""Cached lookups of per-project status tables and the size estimate field."""

import logging
from typing import Optional

from services.jira_client import FETCH_ERRORS
from services.status_classifier import StatusTable
from services.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

STATUS_TABLE_TTL_SECONDS = 60 * 60
SIZE_FIELD_TTL_SECONDS = 60 * 60

# Well-known story point fields, tried after any discovered ones
FALLBACK_SIZE_FIELDS = ["customfield_10016", "customfield_10002"]


class StatusTableSource:
    """Fetches a project's status table, caching it for an hour.

    Falls back to the instance-wide status list. When both lookups fail the
    last error propagates and nothing is cached, so the next request retries.
    """

    def __init__(self, client, cache: Optional[TTLCache] = None):
        self.client = client
        self.cache = cache if cache is not None else TTLCache(STATUS_TABLE_TTL_SECONDS)

    def get_project_status_table(self, project_key: str) -> StatusTable:
        return self.cache.get_or_load(
            ("statusTable", getattr(self.client, "server", None), project_key),
            lambda: self._fetch(project_key)
        )

    def _fetch(self, project_key: str) -> StatusTable:
        try:
            table = StatusTable.from_project_statuses(
                self.client.get_project_statuses(project_key)
            )
            if not table.is_empty:
                return table
        except FETCH_ERRORS as e:
            logger.warning(f"Project statuses unavailable for {project_key}: {e}")

        # Fall back to the instance-wide status list
        try:
            table = StatusTable.from_statuses(self.client.get_all_statuses())
        except FETCH_ERRORS as e:
            logger.warning(f"Global statuses unavailable: {e}")
            raise

        logger.info(f"Using global status list for {project_key} ({len(table.by_id)} statuses)")
        return table


class SizeFieldDiscovery:
    """Finds the custom field ids that hold size estimates (story points)."""

    def __init__(self, client, candidates=None, cache: Optional[TTLCache] = None):
        self.client = client
        self.candidates = list(candidates or ["Story Points", "Story point estimate", "Estimation"])
        self.cache = cache if cache is not None else TTLCache(SIZE_FIELD_TTL_SECONDS)

    def get_size_fields(self) -> list:
        key = ("sizeFields", self.client.server, tuple(self.candidates))
        return self.cache.get_or_load(key, self._discover)

    def _discover(self) -> list:
        try:
            fields = self.client.get_fields()
        except FETCH_ERRORS as e:
            logger.warning(f"Field discovery failed, using fallback ids: {e}")
            return list(FALLBACK_SIZE_FIELDS)

        found = []
        # Exact name matches first, then partial ones, in candidate order
        for exact in (True, False):
            for pattern in self.candidates:
                pattern_lower = pattern.lower()
                for f in fields:
                    if (f.get("schema") or {}).get("type") != "number":
                        continue
                    name_lower = (f.get("name") or "").lower()
                    matched = name_lower == pattern_lower if exact else pattern_lower in name_lower
                    if matched and f.get("id") not in found:
                        found.append(f.get("id"))

        for fallback in FALLBACK_SIZE_FIELDS:
            if fallback not in found:
                found.append(fallback)

        logger.info(f"Discovered size fields: {found}")
        return found
