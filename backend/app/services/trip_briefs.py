import logging
from typing import Any, Dict, Iterable, List, Optional

from app.models import TripBrief, TripBriefView, QuoteRequest
from app.services.database import Database, Transaction, database, dump_json, new_id, utc_now_iso
from app.services.errors import NotFound, PermissionDenied, ValidationError
from app.services.rows import quote_request_from_row, trip_brief_from_row
from app.services.validation import check_window, clean_group_members, clean_procedures, parse_optional_date

logger = logging.getLogger(__name__)

# Briefs only move forward through these ranks.
TRIP_BRIEF_STATUS_RANK = {
    "planning": 0,
    "quotes_requested": 1,
    "completed": 2,
    "archived": 2,
}

BUDGET_RANGES = {"no_budget", "under_2k", "2k_5k", "5k_10k", "10k_20k", "over_20k"}


class TripBriefLinker:
    def __init__(self, db: Database):
        self._db = db

    def create_trip_brief(
        self,
        *,
        traveler_id: str,
        trip_name: str = "",
        destination: Optional[str] = None,
        travel_window_start: Optional[str] = None,
        travel_window_end: Optional[str] = None,
        is_flexible: bool = False,
        procedure_categories: Iterable[str] = (),
        procedures: Iterable[Any] = (),
        procedures_unsure: bool = False,
        is_group: bool = False,
        group_members: Iterable[Any] = (),
        budget_range: str = "no_budget",
    ) -> TripBrief:
        if not traveler_id.strip():
            raise ValidationError("traveler_id is required", field="traveler_id")
        if budget_range not in BUDGET_RANGES:
            raise ValidationError(f"Invalid budget_range. Allowed: {', '.join(sorted(BUDGET_RANGES))}", field="budget_range")
        cleaned_destination = (destination or "").strip() or None
        if is_flexible:
            start, end = None, None
        else:
            start = parse_optional_date(travel_window_start, field="travel_window_start")
            end = parse_optional_date(travel_window_end, field="travel_window_end")
            check_window(start, end)
        cleaned_procedures = clean_procedures(procedures, required=False)
        members = clean_group_members(group_members) if is_group else []
        name = trip_name.strip() or (f"{cleaned_destination} trip" if cleaned_destination else "My trip")
        categories = [c.strip() for c in procedure_categories if c and c.strip()]

        now_iso = utc_now_iso()
        brief_id = new_id("tb")
        with self._db.transaction() as tx:
            tx.execute(
                """
                INSERT INTO trip_briefs (
                    id, traveler_id, trip_name, destination, travel_window_start, travel_window_end, is_flexible,
                    procedure_categories_json, procedures_json, procedures_unsure, is_group, group_members_json,
                    budget_range, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'planning', ?, ?)
                """,
                (
                    brief_id,
                    traveler_id,
                    name,
                    cleaned_destination,
                    start,
                    end,
                    1 if is_flexible else 0,
                    dump_json(categories),
                    dump_json(cleaned_procedures),
                    1 if procedures_unsure else 0,
                    1 if is_group else 0,
                    dump_json(members),
                    budget_range,
                    now_iso,
                    now_iso,
                ),
            )
            row = tx.execute("SELECT * FROM trip_briefs WHERE id = ?", (brief_id,)).fetchone()
        logger.info("Trip brief %s created for %s", brief_id, traveler_id)
        return trip_brief_from_row(row)

    def get_trip_brief(self, trip_brief_id: str) -> TripBrief:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM trip_briefs WHERE id = ?", (trip_brief_id,)).fetchone()
        if not row:
            raise NotFound("Trip brief not found")
        return trip_brief_from_row(row)

    def list_trip_briefs(self, traveler_id: str) -> List[TripBrief]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM trip_briefs WHERE traveler_id = ? ORDER BY created_at DESC",
                (traveler_id,),
            ).fetchall()
        return [trip_brief_from_row(row) for row in rows]

    def update_trip_brief(self, trip_brief_id: str, *, actor_id: str, **changes: Any) -> TripBrief:
        changes = {key: value for key, value in changes.items() if value is not None}
        allowed = {
            "trip_name",
            "destination",
            "travel_window_start",
            "travel_window_end",
            "is_flexible",
            "procedures",
            "budget_range",
            "status",
        }
        unknown = sorted(set(changes) - allowed)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(unknown)}")

        with self._db.transaction() as tx:
            row = tx.execute("SELECT * FROM trip_briefs WHERE id = ?", (trip_brief_id,)).fetchone()
            if not row:
                raise NotFound("Trip brief not found")
            if row["traveler_id"] != actor_id:
                raise PermissionDenied("Only the traveler who created this trip brief can edit it")

            updates: Dict[str, Any] = {}
            if "trip_name" in changes:
                name = str(changes["trip_name"]).strip()
                if not name:
                    raise ValidationError("Trip name cannot be blank", field="trip_name")
                updates["trip_name"] = name
            if "destination" in changes:
                updates["destination"] = str(changes["destination"]).strip() or None
            if "budget_range" in changes:
                if changes["budget_range"] not in BUDGET_RANGES:
                    raise ValidationError("Invalid budget_range", field="budget_range")
                updates["budget_range"] = changes["budget_range"]
            if "procedures" in changes:
                updates["procedures_json"] = dump_json(clean_procedures(changes["procedures"], required=False))

            is_flexible = bool(changes.get("is_flexible", bool(row["is_flexible"])))
            updates["is_flexible"] = 1 if is_flexible else 0
            if is_flexible:
                updates["travel_window_start"] = None
                updates["travel_window_end"] = None
            else:
                start = parse_optional_date(
                    changes.get("travel_window_start", row["travel_window_start"]), field="travel_window_start"
                )
                end = parse_optional_date(changes.get("travel_window_end", row["travel_window_end"]), field="travel_window_end")
                check_window(start, end)
                updates["travel_window_start"] = start
                updates["travel_window_end"] = end

            if "status" in changes:
                next_status = changes["status"]
                current_status = str(row["status"])
                if next_status not in TRIP_BRIEF_STATUS_RANK:
                    raise ValidationError("Invalid trip brief status", field="status")
                if TRIP_BRIEF_STATUS_RANK[next_status] < TRIP_BRIEF_STATUS_RANK[current_status]:
                    raise ValidationError(f"Trip brief cannot go back from {current_status} to {next_status}", field="status")
                updates["status"] = next_status

            updates["updated_at"] = utc_now_iso()
            assignments = ", ".join(f"{column} = ?" for column in updates)
            tx.execute(
                f"UPDATE trip_briefs SET {assignments} WHERE id = ?",
                (*updates.values(), trip_brief_id),
            )
            updated = tx.execute("SELECT * FROM trip_briefs WHERE id = ?", (trip_brief_id,)).fetchone()
        return trip_brief_from_row(updated)

    def assert_usable_by(self, conn: Any, trip_brief_id: str, traveler_id: str) -> None:
        row = conn.execute("SELECT traveler_id FROM trip_briefs WHERE id = ?", (trip_brief_id,)).fetchone()
        if not row:
            raise ValidationError("Unknown trip brief", field="trip_brief_id")
        if row["traveler_id"] != traveler_id:
            raise ValidationError("Trip brief belongs to another traveler", field="trip_brief_id")

    def advance_to_quotes_requested(self, trip_brief_id: str, tx: Optional[Transaction] = None) -> bool:
        """Move a brief from planning to quotes_requested.

        Returns True only for the call that performed the move; briefs already
        past planning are left untouched.
        """
        sql = "UPDATE trip_briefs SET status = 'quotes_requested', updated_at = ? WHERE id = ? AND status = 'planning'"
        if tx is not None:
            changed = tx.execute(sql, (utc_now_iso(), trip_brief_id)).rowcount
        else:
            with self._db.transaction() as own_tx:
                changed = own_tx.execute(sql, (utc_now_iso(), trip_brief_id)).rowcount
        if changed:
            logger.info("Trip brief %s advanced to quotes_requested", trip_brief_id)
        return bool(changed)

    def advance_quietly(self, trip_brief_id: Optional[str]) -> None:
        # Brief status is advisory; callers must not fail on it.
        if not trip_brief_id:
            return
        try:
            self.advance_to_quotes_requested(trip_brief_id)
        except Exception:
            logger.exception("Could not advance trip brief %s", trip_brief_id)

    def attach_quote_request(self, trip_brief_id: str, quote_request_id: str) -> TripBrief:
        with self._db.transaction() as tx:
            brief = tx.execute("SELECT * FROM trip_briefs WHERE id = ?", (trip_brief_id,)).fetchone()
            if not brief:
                raise NotFound("Trip brief not found")
            request_row = tx.execute("SELECT * FROM quote_requests WHERE id = ?", (quote_request_id,)).fetchone()
            if not request_row:
                raise NotFound("Quote request not found")
            if request_row["traveler_id"] != brief["traveler_id"]:
                raise ValidationError("Quote request and trip brief belong to different travelers", field="quote_request_id")
            linked_brief = request_row["trip_brief_id"]
            if linked_brief and linked_brief != trip_brief_id:
                raise ValidationError("Quote request is already linked to another trip brief", field="quote_request_id")
            if not linked_brief:
                now_iso = utc_now_iso()
                tx.execute(
                    "UPDATE quote_requests SET trip_brief_id = ?, updated_at = ? WHERE id = ?",
                    (trip_brief_id, now_iso, quote_request_id),
                )
                if request_row["booking_id"]:
                    tx.execute(
                        "UPDATE bookings SET trip_brief_id = ?, updated_at = ? WHERE id = ? AND trip_brief_id IS NULL",
                        (trip_brief_id, now_iso, request_row["booking_id"]),
                    )
            self.advance_to_quotes_requested(trip_brief_id, tx=tx)
            updated = tx.execute("SELECT * FROM trip_briefs WHERE id = ?", (trip_brief_id,)).fetchone()
        return trip_brief_from_row(updated)

    def linked_quote_requests(self, trip_brief_id: str) -> List[QuoteRequest]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM quote_requests WHERE trip_brief_id = ? ORDER BY created_at ASC",
                (trip_brief_id,),
            ).fetchall()
        return [quote_request_from_row(row) for row in rows]

    def get_view(self, trip_brief_id: str) -> TripBriefView:
        brief = self.get_trip_brief(trip_brief_id)
        return TripBriefView(trip_brief=brief, quote_requests=self.linked_quote_requests(trip_brief_id))


trip_brief_linker = TripBriefLinker(database)
