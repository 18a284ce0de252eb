from typing import Literal, Optional

from pydantic import BaseModel, Field


BookingStatus = Literal[
    "inquiry",
    "provider_responded",
    "quoted",
    "deposit_paid",
    "confirmed",
    "completed",
    "cancelled",
]

QuoteRequestStatus = Literal["pending", "responded", "accepted", "declined", "expired"]

TripBriefStatus = Literal["planning", "quotes_requested", "completed", "archived"]

NotificationType = Literal["quote_received", "inquiry_received", "booking_update", "admin_message"]


class ProcedureItem(BaseModel):
    name: str
    quantity: int = 1


class PreferredDates(BaseModel):
    text: str = ""
    start: Optional[str] = None
    end: Optional[str] = None


class GroupMember(BaseModel):
    name: str
    procedures: list[str] = Field(default_factory=list)
    notes: str = ""


class Provider(BaseModel):
    slug: str
    name: str
    admin_managed: bool = False
    admin_email: Optional[str] = None
    member_user_ids: list[str] = Field(default_factory=list)


class Booking(BaseModel):
    id: str
    traveler_id: str
    provider_id: str
    procedures: list[ProcedureItem]
    preferred_dates: PreferredDates = Field(default_factory=PreferredDates)
    inquiry_message: str = ""
    medical_notes: str = ""
    status: BookingStatus
    quoted_price: Optional[float] = None
    deposit_percent: Optional[float] = None
    deposit_amount: Optional[float] = None
    provider_message: Optional[str] = None
    provider_estimated_dates: Optional[str] = None
    trip_brief_id: Optional[str] = None
    origin: Literal["inquiry", "quote_request"] = "inquiry"
    quote_request_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: str
    updated_at: str


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class InquiryCreateRequest(BaseModel):
    traveler_id: str
    provider_id: str
    procedures: list[ProcedureItem]
    preferred_dates: PreferredDates = Field(default_factory=PreferredDates)
    message: str = ""
    medical_notes: str = ""
    trip_brief_id: Optional[str] = None


class QuoteSubmitRequest(BaseModel):
    actor_id: str
    price: float
    deposit_percent: Optional[float] = None
    estimated_dates: Optional[str] = None
    message: Optional[str] = None


class BookingActionRequest(BaseModel):
    actor_id: str
    note: str = ""


class PaymentSessionHandle(BaseModel):
    booking_id: str
    url: str
    session_id: Optional[str] = None


class QuoteRequest(BaseModel):
    id: str
    traveler_id: str
    trip_brief_id: Optional[str] = None
    provider_id: str
    procedures: list[ProcedureItem]
    is_group: bool = False
    group_members: list[GroupMember] = Field(default_factory=list)
    travel_window_start: Optional[str] = None
    travel_window_end: Optional[str] = None
    is_flexible: bool = False
    notes: str = ""
    contact_email: str
    contact_phone: Optional[str] = None
    comparing_providers: bool = False
    request_type: str = "quote"
    status: QuoteRequestStatus = "pending"
    booking_id: Optional[str] = None
    created_at: str
    updated_at: str


class QuoteRequestCreate(BaseModel):
    traveler_id: str
    provider_id: str
    procedures: list[ProcedureItem]
    trip_brief_id: Optional[str] = None
    is_group: bool = False
    group_members: list[GroupMember] = Field(default_factory=list)
    travel_window_start: Optional[str] = None
    travel_window_end: Optional[str] = None
    is_flexible: bool = False
    notes: str = ""
    contact_email: str
    contact_phone: Optional[str] = None
    comparing_providers: bool = False
    request_type: str = "quote"


class QuoteRequestView(BaseModel):
    quote_request: QuoteRequest
    booking: Booking


class TripBrief(BaseModel):
    id: str
    traveler_id: str
    trip_name: str
    destination: Optional[str] = None
    travel_window_start: Optional[str] = None
    travel_window_end: Optional[str] = None
    is_flexible: bool = False
    procedure_categories: list[str] = Field(default_factory=list)
    procedures: list[ProcedureItem] = Field(default_factory=list)
    procedures_unsure: bool = False
    is_group: bool = False
    group_members: list[GroupMember] = Field(default_factory=list)
    budget_range: str = "no_budget"
    status: TripBriefStatus = "planning"
    created_at: str
    updated_at: str


class TripBriefCreateRequest(BaseModel):
    traveler_id: str
    trip_name: str = ""
    destination: Optional[str] = None
    travel_window_start: Optional[str] = None
    travel_window_end: Optional[str] = None
    is_flexible: bool = False
    procedure_categories: list[str] = Field(default_factory=list)
    procedures: list[ProcedureItem] = Field(default_factory=list)
    procedures_unsure: bool = False
    is_group: bool = False
    group_members: list[GroupMember] = Field(default_factory=list)
    budget_range: str = "no_budget"


class TripBriefUpdateRequest(BaseModel):
    actor_id: str
    trip_name: Optional[str] = None
    destination: Optional[str] = None
    travel_window_start: Optional[str] = None
    travel_window_end: Optional[str] = None
    is_flexible: Optional[bool] = None
    procedures: Optional[list[ProcedureItem]] = None
    budget_range: Optional[str] = None
    status: Optional[Literal["completed", "archived"]] = None


class TripBriefView(BaseModel):
    trip_brief: TripBrief
    quote_requests: list[QuoteRequest] = Field(default_factory=list)


class AttachQuoteRequest(BaseModel):
    actor_id: str
    quote_request_id: str


class Message(BaseModel):
    id: str
    booking_id: str
    sender_id: str
    body: str
    seq: int
    created_at: str


class MessageCreateRequest(BaseModel):
    sender_id: str
    body: str


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    type: NotificationType = "booking_update"
    title: str
    body: str = ""
    link: Optional[str] = None
    read: bool = False
    created_at: str


class NotificationPreferencesUpdate(BaseModel):
    user_id: str
    preferences: dict[NotificationType, bool]


class NotificationPreferences(BaseModel):
    user_id: str
    preferences: dict[str, bool] = Field(default_factory=dict)
