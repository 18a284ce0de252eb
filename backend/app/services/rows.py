import sqlite3

from app.models import Booking, Message, PreferredDates, QuoteRequest, TripBrief
from app.services.database import load_json


def booking_from_row(row: sqlite3.Row) -> Booking:
    return Booking(
        id=row["id"],
        traveler_id=row["traveler_id"],
        provider_id=row["provider_id"],
        procedures=load_json(row["procedures_json"], []),
        preferred_dates=PreferredDates(**load_json(row["preferred_dates_json"], {})),
        inquiry_message=row["inquiry_message"] or "",
        medical_notes=row["medical_notes"] or "",
        status=row["status"],
        quoted_price=row["quoted_price"],
        deposit_percent=row["deposit_percent"],
        deposit_amount=row["deposit_amount"],
        provider_message=row["provider_message"],
        provider_estimated_dates=row["provider_estimated_dates"],
        trip_brief_id=row["trip_brief_id"],
        origin=row["origin"],
        quote_request_id=row["quote_request_id"],
        checkout_session_id=row["checkout_session_id"],
        payment_reference=row["payment_reference"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def quote_request_from_row(row: sqlite3.Row) -> QuoteRequest:
    return QuoteRequest(
        id=row["id"],
        traveler_id=row["traveler_id"],
        trip_brief_id=row["trip_brief_id"],
        provider_id=row["provider_id"],
        procedures=load_json(row["procedures_json"], []),
        is_group=bool(row["is_group"]),
        group_members=load_json(row["group_members_json"], []),
        travel_window_start=row["travel_window_start"],
        travel_window_end=row["travel_window_end"],
        is_flexible=bool(row["is_flexible"]),
        notes=row["notes"] or "",
        contact_email=row["contact_email"],
        contact_phone=row["contact_phone"],
        comparing_providers=bool(row["comparing_providers"]),
        request_type=row["request_type"],
        status=row["status"],
        booking_id=row["booking_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def trip_brief_from_row(row: sqlite3.Row) -> TripBrief:
    return TripBrief(
        id=row["id"],
        traveler_id=row["traveler_id"],
        trip_name=row["trip_name"],
        destination=row["destination"],
        travel_window_start=row["travel_window_start"],
        travel_window_end=row["travel_window_end"],
        is_flexible=bool(row["is_flexible"]),
        procedure_categories=load_json(row["procedure_categories_json"], []),
        procedures=load_json(row["procedures_json"], []),
        procedures_unsure=bool(row["procedures_unsure"]),
        is_group=bool(row["is_group"]),
        group_members=load_json(row["group_members_json"], []),
        budget_range=row["budget_range"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        booking_id=row["booking_id"],
        sender_id=row["sender_id"],
        body=row["body"],
        seq=int(row["seq"]),
        created_at=row["created_at"],
    )
