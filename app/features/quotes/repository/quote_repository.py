"""
Persistence layer for quote requests, quote responses and revisions.

Every status or warning-guard mutation is a conditional UPDATE so a
concurrent writer (customer accepting, a second sweep) can never be
silently overwritten. Callers read the returned bool: False means the
guard did not match and nothing was written.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import psycopg
from psycopg import Rollback, sql
from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.db.pool import db_pool
from app.features.quotes.domain import (
    PartnerRecord,
    PersistenceFailure,
    QuoteItem,
    QuotePricing,
    QuoteRequest,
    QuoteRequestStatus,
    QuoteResponse,
    QuoteResponseStatus,
    RevisionRequest,
    RevisionStatus,
    UserRecord,
)
from app.features.quotes.domain.pricing import pricing_matches
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ADMIN_USER_TYPES = ("admin", "master_admin", "editor_admin")

StatusGuard = Enum | tuple[Enum, ...]


class QuoteStore(Protocol):
    """Quote persistence as consumed by the lifecycle service and the sweep."""

    async def list_active_quote_responses(self) -> list[QuoteResponse]: ...

    async def get_quote_response_by_id(self, response_id: int) -> QuoteResponse | None: ...

    async def get_quote_request_by_id(self, request_id: int) -> QuoteRequest | None: ...

    async def get_user_by_id(self, user_id: int) -> UserRecord | None: ...

    async def get_partner_by_id(self, partner_id: int) -> PartnerRecord | None: ...

    async def list_admin_ids(self) -> list[int]: ...

    async def create_quote_response(self, **fields: Any) -> QuoteResponse: ...

    async def conditional_update_quote_response(
        self, response_id: int, expected_status: StatusGuard, patch: dict[str, Any]
    ) -> bool: ...

    async def conditional_update_quote_request(
        self, request_id: int, expected_status: StatusGuard, patch: dict[str, Any]
    ) -> bool: ...

    async def record_expiration_warning(self, response_id: int, sent_at: datetime) -> bool: ...

    async def expire_quote_and_request(
        self, response_id: int, quote_request_id: int
    ) -> tuple[bool, bool]: ...

    async def create_revision_request(
        self,
        quote_response_id: int,
        requester_id: int,
        requested_items: list[QuoteItem],
        message: str | None,
    ) -> RevisionRequest: ...

    async def get_revision_request_by_id(self, revision_id: int) -> RevisionRequest | None: ...

    async def get_pending_revision(self, quote_response_id: int) -> RevisionRequest | None: ...

    async def conditional_update_revision_request(
        self, revision_id: int, expected_status: StatusGuard, patch: dict[str, Any]
    ) -> bool: ...

    async def apply_revision(
        self, revision_id: int, quote_response_id: int, pricing: QuotePricing
    ) -> bool: ...


def _status_values(expected: StatusGuard) -> list[str]:
    statuses = expected if isinstance(expected, tuple) else (expected,)
    return [status.value for status in statuses]


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list) and value and isinstance(value[0], QuoteItem):
        return Jsonb([item.to_dict() for item in value])
    return value


def _as_utc(value: datetime | None) -> datetime | None:
    """Columns are `timestamp` without time zone and hold UTC wall time."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _items_from_json(raw: Iterable[dict] | None) -> list[QuoteItem]:
    return [QuoteItem.from_dict(item) for item in (raw or [])]


class PostgresQuoteRepository:
    """QuoteStore backed by PostgreSQL through the shared psycopg pool."""

    REQUEST_COLUMNS = """
        id, user_id, partner_id, service_needed, budget, message, status,
        response_time_minutes, satisfaction_rating, created_at, updated_at
    """

    RESPONSE_COLUMNS = """
        id, quote_request_id, partner_id, quote_number, title, items,
        subtotal, discount_amount, discount_percent, tax_rate_basis_points,
        tax_amount, total_amount, currency, valid_until, status,
        warning_sent_at, created_at, updated_at
    """

    REVISION_COLUMNS = """
        id, quote_response_id, user_id, requested_items, message, status,
        partner_response, created_at, updated_at
    """

    # Columns a conditional patch may touch
    REQUEST_PATCHABLE = frozenset({"status", "response_time_minutes", "satisfaction_rating"})
    RESPONSE_PATCHABLE = frozenset({"status", "warning_sent_at", "valid_until"})
    REVISION_PATCHABLE = frozenset({"status", "partner_response"})

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_request(row: dict | None) -> QuoteRequest | None:
        if not row:
            return None

        return QuoteRequest(
            id=row["id"],
            requester_id=row["user_id"],
            partner_id=row["partner_id"],
            service_needed=row["service_needed"],
            budget=row.get("budget"),
            message=row.get("message"),
            status=QuoteRequestStatus(row["status"]),
            response_time_minutes=row.get("response_time_minutes"),
            satisfaction_rating=row.get("satisfaction_rating"),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )

    @staticmethod
    def _row_to_response(row: dict | None) -> QuoteResponse | None:
        if not row:
            return None

        response = QuoteResponse(
            id=row["id"],
            quote_request_id=row["quote_request_id"],
            partner_id=row["partner_id"],
            quote_number=row["quote_number"],
            title=row.get("title") or "",
            items=_items_from_json(row.get("items")),
            subtotal=row["subtotal"],
            discount_amount=row.get("discount_amount") or 0,
            discount_percent=row.get("discount_percent") or 0,
            tax_rate_basis_points=row.get("tax_rate_basis_points") or 0,
            tax_amount=row["tax_amount"],
            total_amount=row["total_amount"],
            currency=row.get("currency") or "TRY",
            valid_until=_as_utc(row.get("valid_until")),
            status=QuoteResponseStatus(row["status"]),
            warning_sent_at=_as_utc(row.get("warning_sent_at")),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )

        if not pricing_matches(response):
            logger.warning(
                "Stored quote totals do not match recomputation",
                quote_id=response.id,
                quote_number=response.quote_number,
            )

        return response

    @staticmethod
    def _row_to_revision(row: dict | None) -> RevisionRequest | None:
        if not row:
            return None

        return RevisionRequest(
            id=row["id"],
            quote_response_id=row["quote_response_id"],
            requester_id=row["user_id"],
            requested_items=_items_from_json(row.get("requested_items")),
            message=row.get("message"),
            status=RevisionStatus(row["status"]),
            partner_response=row.get("partner_response"),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_active_quote_responses(self) -> list[QuoteResponse]:
        query = f"""
            SELECT {self.RESPONSE_COLUMNS}
            FROM quote_responses
            WHERE status = %s
            ORDER BY valid_until NULLS LAST, id
        """
        try:
            rows = await fetch_all(query, (QuoteResponseStatus.SENT.value,))
        except DatabaseError as e:
            raise PersistenceFailure(
                f"Failed to list active quote responses: {e}", operation="list_active"
            ) from e
        return [self._row_to_response(row) for row in rows]

    async def get_quote_response_by_id(self, response_id: int) -> QuoteResponse | None:
        query = f"SELECT {self.RESPONSE_COLUMNS} FROM quote_responses WHERE id = %s"
        return self._row_to_response(await self._fetch_one("get_quote_response", query, (response_id,)))

    async def get_quote_request_by_id(self, request_id: int) -> QuoteRequest | None:
        query = f"SELECT {self.REQUEST_COLUMNS} FROM quote_requests WHERE id = %s"
        return self._row_to_request(await self._fetch_one("get_quote_request", query, (request_id,)))

    async def get_user_by_id(self, user_id: int) -> UserRecord | None:
        query = """
            SELECT id, email, first_name, last_name, user_type,
                   COALESCE(email_notifications_enabled, TRUE) AS email_notifications_enabled
            FROM users
            WHERE id = %s
        """
        row = await self._fetch_one("get_user", query, (user_id,))
        if not row:
            return None
        return UserRecord(
            id=row["id"],
            email=row.get("email"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            user_type=row.get("user_type") or "user",
            email_notifications_enabled=bool(row["email_notifications_enabled"]),
        )

    async def get_partner_by_id(self, partner_id: int) -> PartnerRecord | None:
        query = "SELECT id, user_id, company_name FROM partners WHERE id = %s"
        row = await self._fetch_one("get_partner", query, (partner_id,))
        if not row:
            return None
        return PartnerRecord(id=row["id"], user_id=row["user_id"], company_name=row["company_name"])

    async def list_admin_ids(self) -> list[int]:
        query = "SELECT id FROM users WHERE user_type = ANY(%s) ORDER BY id"
        try:
            rows = await fetch_all(query, (list(ADMIN_USER_TYPES),))
        except DatabaseError as e:
            raise PersistenceFailure(f"Failed to list admins: {e}", operation="list_admin_ids") from e
        return [row["id"] for row in rows]

    async def get_revision_request_by_id(self, revision_id: int) -> RevisionRequest | None:
        query = f"SELECT {self.REVISION_COLUMNS} FROM revision_requests WHERE id = %s"
        return self._row_to_revision(await self._fetch_one("get_revision", query, (revision_id,)))

    async def get_pending_revision(self, quote_response_id: int) -> RevisionRequest | None:
        query = f"""
            SELECT {self.REVISION_COLUMNS}
            FROM revision_requests
            WHERE quote_response_id = %s AND status = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        row = await self._fetch_one(
            "get_pending_revision", query, (quote_response_id, RevisionStatus.PENDING.value)
        )
        return self._row_to_revision(row)

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    async def create_quote_response(self, **fields: Any) -> QuoteResponse:
        query = f"""
            INSERT INTO quote_responses (
                quote_request_id, partner_id, quote_number, title, items,
                subtotal, discount_amount, discount_percent, tax_rate_basis_points,
                tax_amount, total_amount, currency, valid_until, status
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.RESPONSE_COLUMNS}
        """
        params = (
            fields["quote_request_id"],
            fields["partner_id"],
            fields["quote_number"],
            fields.get("title", ""),
            Jsonb([item.to_dict() for item in fields["items"]]),
            fields["subtotal"],
            fields.get("discount_amount", 0),
            fields.get("discount_percent", 0),
            fields.get("tax_rate_basis_points", 0),
            fields["tax_amount"],
            fields["total_amount"],
            fields["currency"],
            fields.get("valid_until"),
            QuoteResponseStatus.SENT.value,
        )
        row = await self._fetch_one("create_quote_response", query, params)
        if not row:
            raise PersistenceFailure("Failed to create quote response", operation="create_quote_response")

        logger.info(
            "Quote response created",
            quote_id=row["id"],
            quote_number=row["quote_number"],
            quote_request_id=row["quote_request_id"],
        )
        return self._row_to_response(row)

    async def create_revision_request(
        self,
        quote_response_id: int,
        requester_id: int,
        requested_items: list[QuoteItem],
        message: str | None,
    ) -> RevisionRequest:
        query = f"""
            INSERT INTO revision_requests (quote_response_id, user_id, requested_items, message, status)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {self.REVISION_COLUMNS}
        """
        params = (
            quote_response_id,
            requester_id,
            Jsonb([item.to_dict() for item in requested_items]),
            message,
            RevisionStatus.PENDING.value,
        )
        row = await self._fetch_one("create_revision_request", query, params)
        if not row:
            raise PersistenceFailure("Failed to create revision request", operation="create_revision_request")
        return self._row_to_revision(row)

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    async def conditional_update_quote_response(
        self, response_id: int, expected_status: StatusGuard, patch: dict[str, Any]
    ) -> bool:
        return await self._conditional_update(
            "quote_responses", self.RESPONSE_PATCHABLE, response_id, expected_status, patch
        )

    async def conditional_update_quote_request(
        self, request_id: int, expected_status: StatusGuard, patch: dict[str, Any]
    ) -> bool:
        return await self._conditional_update(
            "quote_requests", self.REQUEST_PATCHABLE, request_id, expected_status, patch
        )

    async def conditional_update_revision_request(
        self, revision_id: int, expected_status: StatusGuard, patch: dict[str, Any]
    ) -> bool:
        return await self._conditional_update(
            "revision_requests", self.REVISION_PATCHABLE, revision_id, expected_status, patch
        )

    async def record_expiration_warning(self, response_id: int, sent_at: datetime) -> bool:
        query = """
            UPDATE quote_responses
            SET warning_sent_at = %s, updated_at = NOW()
            WHERE id = %s AND status = %s AND warning_sent_at IS NULL
        """
        try:
            updated = await execute_query(query, (sent_at, response_id, QuoteResponseStatus.SENT.value))
        except DatabaseError as e:
            raise PersistenceFailure(
                f"Failed to record expiration warning: {e}", operation="record_expiration_warning"
            ) from e
        return updated == 1

    async def expire_quote_and_request(
        self, response_id: int, quote_request_id: int
    ) -> tuple[bool, bool]:
        """
        Expire a sent quote and its quote_sent request in one transaction.

        Returns (quote_expired, request_expired). A quote that already left
        `sent` writes nothing; a request outside `quote_sent` is left alone
        while the quote still expires.
        """
        expire_response = """
            UPDATE quote_responses
            SET status = %s, updated_at = NOW()
            WHERE id = %s AND status = %s
        """
        expire_request = """
            UPDATE quote_requests
            SET status = %s, updated_at = NOW()
            WHERE id = %s AND status = %s
        """
        quote_expired = request_expired = False
        try:
            async with db_pool.transaction() as conn:
                expired = await execute_query(
                    expire_response,
                    (QuoteResponseStatus.EXPIRED.value, response_id, QuoteResponseStatus.SENT.value),
                    connection=conn,
                )
                if expired != 1:
                    raise Rollback()

                mirrored = await execute_query(
                    expire_request,
                    (
                        QuoteRequestStatus.EXPIRED.value,
                        quote_request_id,
                        QuoteRequestStatus.QUOTE_SENT.value,
                    ),
                    connection=conn,
                )
                quote_expired, request_expired = True, mirrored == 1
        except (DatabaseError, psycopg.Error) as e:
            raise PersistenceFailure(
                f"Failed to expire quote: {e}", operation="expire_quote_and_request"
            ) from e

        return quote_expired, request_expired

    async def apply_revision(
        self, revision_id: int, quote_response_id: int, pricing: QuotePricing
    ) -> bool:
        """
        Mark the revision accepted and replace the quote's items and totals
        in one transaction. Either guard failing rolls both statements back.
        """
        accept_revision = """
            UPDATE revision_requests
            SET status = %s, updated_at = NOW()
            WHERE id = %s AND quote_response_id = %s AND status = %s
        """
        replace_pricing = """
            UPDATE quote_responses
            SET items = %s, subtotal = %s, discount_amount = %s,
                tax_amount = %s, total_amount = %s, updated_at = NOW()
            WHERE id = %s AND status = %s
        """
        applied = False
        try:
            async with db_pool.transaction() as conn:
                revised = await execute_query(
                    accept_revision,
                    (
                        RevisionStatus.ACCEPTED.value,
                        revision_id,
                        quote_response_id,
                        RevisionStatus.PENDING.value,
                    ),
                    connection=conn,
                )
                if revised != 1:
                    raise Rollback()

                repriced = await execute_query(
                    replace_pricing,
                    (
                        Jsonb([item.to_dict() for item in pricing.items]),
                        pricing.subtotal,
                        pricing.discount_amount,
                        pricing.tax_amount,
                        pricing.total_amount,
                        quote_response_id,
                        QuoteResponseStatus.SENT.value,
                    ),
                    connection=conn,
                )
                if repriced != 1:
                    raise Rollback()

                applied = True
        except (DatabaseError, psycopg.Error) as e:
            raise PersistenceFailure(f"Failed to apply revision: {e}", operation="apply_revision") from e

        return applied

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch_one(self, operation: str, query: str, params: tuple) -> dict | None:
        try:
            return await fetch_one(query, params)
        except DatabaseError as e:
            raise PersistenceFailure(f"{operation} failed: {e}", operation=operation) from e

    async def _conditional_update(
        self,
        table: str,
        patchable: frozenset[str],
        row_id: int,
        expected_status: StatusGuard,
        patch: dict[str, Any],
    ) -> bool:
        unknown = set(patch) - patchable
        if unknown or not patch:
            raise ValueError(f"Unsupported patch for {table}: {sorted(unknown) or 'empty'}")

        assignments = []
        params: list[Any] = []
        for column, value in patch.items():
            if column == "response_time_minutes":
                # Set once, on the first transition out of pending
                assignments.append(
                    sql.SQL("{col} = COALESCE({col}, %s)").format(col=sql.Identifier(column))
                )
            else:
                assignments.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            params.append(_db_value(value))

        query = sql.SQL(
            "UPDATE {table} SET {assignments}, updated_at = NOW() WHERE id = %s AND status = ANY(%s)"
        ).format(table=sql.Identifier(table), assignments=sql.SQL(", ").join(assignments))
        params.extend([row_id, _status_values(expected_status)])

        try:
            updated = await execute_query(query, tuple(params))
        except DatabaseError as e:
            raise PersistenceFailure(
                f"Conditional update on {table} failed: {e}", operation="conditional_update"
            ) from e

        if updated != 1:
            logger.info(
                "Conditional update did not match",
                table=table,
                row_id=row_id,
                expected_status=_status_values(expected_status),
            )
        return updated == 1
