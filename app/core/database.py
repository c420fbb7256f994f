import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from fastapi import HTTPException, Request, status
from sqlalchemy.dialects import sqlite
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import CreateIndex, CreateTable
from sqlalchemy.sql import ClauseElement

from app.core.config import Settings
from app.core.errors import (
    ConfigurationError,
    ConflictError,
    ShortLinkError,
    StoreError,
    TransientError,
)

logger = logging.getLogger(__name__)

# Bounds the whole round trip, measured from the start of the request
QUERY_TIMEOUT_SECONDS = 5.0

# SQLite extended result names the store may surface for a uniqueness violation
UNIQUE_VIOLATION_CODES = ("SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY")
# Compatibility shim: the HTTP API reports constraint failures only as text
UNIQUE_VIOLATION_PATTERN = re.compile(r"unique", re.IGNORECASE)

Row = Dict[str, Any]

# The remote store speaks SQLite, so every statement is compiled for it
dialect = sqlite.dialect()


# All the models are "stored" in the Base class; the DDL is compiled from it
class Base(DeclarativeBase):
    pass


# =========================
# Statements
# =========================
@dataclass(frozen=True, repr=False)
class Statement:
    """One SQL statement plus its positional parameters."""

    sql: str
    params: tuple = ()

    def to_payload(self) -> Dict[str, Any]:
        return {"sql": self.sql, "params": list(self.params)}

    def redacted(self) -> str:
        """Log-safe form: the SQL text with every parameter value hidden."""
        placeholders = ", ".join("?" for _ in self.params)
        return f"{' '.join(self.sql.split())} -- params: [{placeholders}]"

    def __repr__(self) -> str:
        return f"Statement({self.redacted()!r})"


def _to_wire(value: Any) -> Any:
    # JSON has booleans but SQLite stores them as integers
    if isinstance(value, bool):
        return int(value)
    return value


def compile_statement(clause: Union[Statement, ClauseElement]) -> Statement:
    """Compile a SQLAlchemy Core construct into a positional Statement."""
    if isinstance(clause, Statement):
        return clause

    compiled = clause.compile(dialect=dialect)
    values = compiled.params
    params = tuple(_to_wire(values[name]) for name in compiled.positiontup or ())
    return Statement(str(compiled), params)


def classify_store_errors(errors: Sequence[Any]) -> ShortLinkError:
    """
    Reduce the store's error list to the error taxonomy.

    A structured SQLite result name wins when present; otherwise the message
    text is matched against UNIQUE_VIOLATION_PATTERN. Only the uniqueness
    signal survives, everything else becomes a generic StoreError.
    """
    codes = []
    messages = []
    for error in errors or []:
        if isinstance(error, dict):
            codes.append(str(error.get("code", "")))
            messages.append(str(error.get("message", "")))
        else:
            messages.append(str(error))

    detail = "; ".join(messages)
    if any(code in UNIQUE_VIOLATION_CODES for code in codes) or any(
        name in detail for name in UNIQUE_VIOLATION_CODES
    ):
        return ConflictError()
    if UNIQUE_VIOLATION_PATTERN.search(detail):
        return ConflictError()
    return StoreError()


# =========================
# SQL execution client
# =========================
class D1Client:
    """
    Executes SQL against the remote store over its HTTP query API.

    The client holds no transaction state between calls. One instance is
    built at startup and handed to dependents; ``reset`` recreates the
    underlying HTTP connection pool.
    """

    def __init__(
        self,
        account_id: Optional[str],
        database_id: Optional[str],
        api_token: Optional[str],
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = QUERY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not account_id or not database_id or not api_token:
            raise ConfigurationError("SQL store credentials not configured")

        self.url = (
            f"{base_url.rstrip('/')}/accounts/{account_id}"
            f"/d1/database/{database_id}/query"
        )
        self.timeout = timeout
        self._api_token = api_token
        self._transport = transport
        self._http = self._build_http()

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "D1Client":
        return cls(
            account_id=settings.CLOUDFLARE_ACCOUNT_ID,
            database_id=settings.CLOUDFLARE_D1_DATABASE_ID,
            api_token=settings.CLOUDFLARE_API_TOKEN,
            base_url=settings.D1_API_BASE_URL,
            transport=transport,
        )

    def _build_http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Authorization": f"Bearer {self._api_token}"},
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    async def reset(self) -> None:
        await self._http.aclose()
        self._http = self._build_http()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, body: Any) -> List[Dict[str, Any]]:
        try:
            response = await asyncio.wait_for(
                self._http.post(self.url, json=body), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"SQL request timed out after {self.timeout}s")
            raise TransientError("Query timed out") from None
        except httpx.TransportError as error:
            logger.warning(f"SQL request failed: {error!r}")
            raise TransientError() from None

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error or not isinstance(data, dict) or not data.get("success"):
            errors = data.get("errors", []) if isinstance(data, dict) else []
            logger.error(
                f"SQL store error (HTTP {response.status_code}): "
                f"{errors or response.text[:200]}"
            )
            raise classify_store_errors(errors)

        return data.get("result") or []

    async def execute_query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        """Run a single statement and return its rows."""
        statement = Statement(sql, tuple(_to_wire(p) for p in params or ()))
        logger.debug(f"query: {statement.redacted()}")
        result = await self._post(statement.to_payload())
        if not result:
            return []
        return result[0].get("results") or []

    async def execute_batch(self, statements: Sequence[Statement]) -> List[List[Row]]:
        """
        Run statements as one atomic unit, in order.

        Returns one row list per statement. Either every statement takes
        effect or none does.
        """
        if not statements:
            return []

        logger.debug(f"batch of {len(statements)} statements")
        result = await self._post([s.to_payload() for s in statements])
        if len(result) != len(statements):
            logger.error(
                f"SQL batch returned {len(result)} results for {len(statements)} statements"
            )
            raise StoreError()
        return [entry.get("results") or [] for entry in result]

    async def execute(self, clause: Union[Statement, ClauseElement]) -> List[Row]:
        statement = compile_statement(clause)
        return await self.execute_query(statement.sql, statement.params)

    async def execute_many(
        self, clauses: Sequence[Union[Statement, ClauseElement]]
    ) -> List[List[Row]]:
        return await self.execute_batch([compile_statement(c) for c in clauses])


async def ensure_schema(client: D1Client) -> int:
    """Create every table and index that does not exist yet, in one batch."""
    # Register the tables on Base.metadata
    from app.core import models  # noqa: F401

    statements = []
    for table in Base.metadata.sorted_tables:
        ddl = CreateTable(table, if_not_exists=True).compile(dialect=dialect)
        statements.append(Statement(str(ddl).strip()))
        for index in sorted(table.indexes, key=lambda i: i.name):
            ddl = CreateIndex(index, if_not_exists=True).compile(dialect=dialect)
            statements.append(Statement(str(ddl).strip()))

    await client.execute_batch(statements)
    return len(statements)


# This is the "Bridge" that gives my routes access to the SQL store
def get_client(request: Request) -> D1Client:
    client = getattr(request.app.state, "d1", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=ConfigurationError.default_message,
        )
    return client
