from __future__ import annotations

import logging
from urllib.parse import quote

import requests

from coursetally.errors import ProviderError
from coursetally.identity import IdentityProvider, bearer_headers, checked_json
from coursetally.models import MasterEntity, ReferenceConfig


logger = logging.getLogger(__name__)


def _column_letter(index: int) -> str:
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def parse_sheet_rows(rows: list[list[str]], id_column: int = 0, title_column: int = 3) -> list[MasterEntity]:
    """Build master entities from sheet rows; the first row is a header."""
    entities: list[MasterEntity] = []
    for row_number, row in enumerate(rows[1:], start=2):
        if len(row) <= max(id_column, title_column):
            continue
        entity_id = str(row[id_column] or "").strip()
        title = str(row[title_column] or "").strip()
        if not entity_id or not title:
            continue
        entities.append(MasterEntity(id=entity_id, title=title, source_row_id=row_number))
    return entities


class SheetsMasterEntityProvider:
    source = "master_entities"

    def __init__(
        self,
        config: ReferenceConfig,
        identity: IdentityProvider,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.identity = identity
        self.http = session or requests.Session()

    def _values_endpoint(self) -> str:
        last_column = _column_letter(max(self.config.id_column, self.config.title_column))
        cell_range = f"{self.config.sheet_name}!A:{last_column}"
        base = self.config.api_base.rstrip("/")
        return f"{base}/{self.config.spreadsheet_id}/values/{quote(cell_range, safe='')}"

    def fetch_master_entities(self) -> list[MasterEntity]:
        if not self.config.spreadsheet_id:
            raise ProviderError(self.source, "reference spreadsheet_id is not configured")
        try:
            response = self.http.get(
                self._values_endpoint(),
                headers=bearer_headers(self.identity),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderError(self.source, f"{type(exc).__name__}: {exc}") from exc
        payload = checked_json(response, self.source)
        rows = payload.get("values", []) if isinstance(payload, dict) else []
        entities = parse_sheet_rows(rows, self.config.id_column, self.config.title_column)
        if not entities:
            logger.warning("No master entities found in sheet %s", self.config.sheet_name)
        else:
            logger.info("Loaded %d master entities from sheet %s", len(entities), self.config.sheet_name)
        return entities
