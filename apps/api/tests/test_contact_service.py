from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, create_db_engine
from app.crm.contacts.models import CRMContact
from app.crm.contacts.repository import ContactRepository
from app.crm.contacts.schemas import (
    ContactCreate,
    ContactGetOrCreate,
    ContactLookup,
    ContactUpdate,
    KanbanMoveRequest,
)
from app.crm.contacts.service import ContactService, normalize_tags
from app.crm.deals.schemas import DealCreate
from app.crm.deals.service import DealService
from app.crm.errors import ConflictError, NotFoundError, ValidationError
from app.platform.security.context import AuthContext
from app.platform.security.errors import MissingTenantError


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def ctx() -> AuthContext:
    return AuthContext(user_id="seller-1", tenant_id="tenant-a", correlation_id="corr-contacts")


@pytest.fixture()
def service() -> ContactService:
    return ContactService()


def _lead(service: ContactService, session: Session, ctx: AuthContext, **fields) -> uuid.UUID:
    payload = {"name": "Lead", "phone": f"1198{uuid.uuid4().int % 10**7:07d}"}
    payload.update(fields)
    return service.create_contact(session, ctx, ContactCreate(**payload)).id


def test_get_or_create_creates_then_finds_by_phone_variant(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    first = service.get_or_create(
        db_session,
        ctx,
        ContactGetOrCreate(phone="+55 (11) 99999-0000", name="Maria Silva", origin="landing"),
    )
    assert first.created is True
    assert first.action == "created"
    assert first.message_key == "contact.created"
    assert first.contact.phone == "5511999990000"
    assert first.contact.owner_id == "seller-1"
    assert first.contact.kanban_position == 1000

    second = service.get_or_create(db_session, ctx, ContactGetOrCreate(phone="11 99999-0000", name="Other Name"))
    assert second.created is False
    assert second.action == "found"
    assert second.message_key == "contact.found_existing"
    assert second.contact.id == first.contact.id
    assert second.contact.name == "Maria Silva"

    created_events = [item for item in events.published_events if item["event_type"] == "crm.contact.created"]
    assert len(created_events) == 1
    assert created_events[0]["tenant_id"] == "tenant-a"


def test_get_or_create_restores_soft_deleted_contact(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    created = service.get_or_create(
        db_session, ctx, ContactGetOrCreate(email="Ana@Example.com", name="Ana")
    )
    service.soft_delete_contact(db_session, ctx, created.contact.id)
    with pytest.raises(NotFoundError):
        service.get_contact(db_session, ctx, created.contact.id)

    restored = service.get_or_create(db_session, ctx, ContactGetOrCreate(email="ana@example.com", name="Ana Paula"))

    assert restored.action == "restored"
    assert restored.restored is True
    assert restored.created is False
    assert restored.message_key == "contact.restored"
    assert restored.contact.id == created.contact.id
    assert restored.contact.name == "Ana Paula"
    assert service.get_contact(db_session, ctx, created.contact.id).email == "ana@example.com"
    assert any(entry["action"] == "restored" for entry in audit.audit_entries)


def test_get_or_create_prefers_phone_over_email_and_document(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    by_phone = _lead(service, db_session, ctx, name="Phone Owner", phone="11911112222")
    _lead(service, db_session, ctx, name="Email Owner", phone=None, email="owner@example.com")
    _lead(service, db_session, ctx, name="Document Owner", phone=None, document_number="123.456.789-09")

    resolution = service.get_or_create(
        db_session,
        ctx,
        ContactGetOrCreate(phone="11911112222", email="owner@example.com", document_number="12345678909"),
    )

    assert resolution.action == "found"
    assert resolution.contact.id == by_phone


def test_get_or_create_falls_back_to_document(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    owner = _lead(service, db_session, ctx, name="Document Owner", phone=None, document_number="123.456.789-09")

    resolution = service.get_or_create(
        db_session, ctx, ContactGetOrCreate(phone="11900000001", document_number="12345678909")
    )

    assert resolution.action == "found"
    assert resolution.contact.id == owner


def test_get_or_create_requires_an_identifier(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    with pytest.raises(ValidationError) as exc_info:
        service.get_or_create(db_session, ctx, ContactGetOrCreate(phone="  ", name="Nobody"))

    assert exc_info.value.message_key == "contact.identifier_required"
    assert set(exc_info.value.fields) == {"phone", "email", "document_number"}


def test_get_or_create_requires_a_tenant(db_session: Session, service: ContactService) -> None:
    with pytest.raises(MissingTenantError):
        service.get_or_create(db_session, AuthContext(user_id="u1"), ContactGetOrCreate(phone="11999990000"))


class _StaleLookupRepository(ContactRepository):
    """Misses on the first lookup, as if a concurrent insert landed right after it."""

    def __init__(self, misses: int = 1) -> None:
        self.misses = misses

    def find_by_identifiers(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        if self.misses > 0:
            self.misses -= 1
            return None
        return super().find_by_identifiers(*args, **kwargs)


def test_get_or_create_recovers_from_unique_violation(db_session: Session, ctx: AuthContext) -> None:
    winner = ContactService().get_or_create(db_session, ctx, ContactGetOrCreate(phone="11977776666", name="Winner"))

    racing = ContactService(repository=_StaleLookupRepository(misses=1))
    resolution = racing.get_or_create(db_session, ctx, ContactGetOrCreate(phone="11977776666", name="Loser"))

    assert resolution.action == "found"
    assert resolution.contact.id == winner.contact.id
    rows = db_session.scalars(select(CRMContact.id).where(CRMContact.phone == "11977776666")).all()
    assert rows == [winner.contact.id]


def test_get_or_create_conflicts_when_race_cannot_be_resolved(db_session: Session, ctx: AuthContext) -> None:
    ContactService().get_or_create(db_session, ctx, ContactGetOrCreate(phone="11955554444", name="Winner"))

    racing = ContactService(repository=_StaleLookupRepository(misses=2))
    with pytest.raises(ConflictError) as exc_info:
        racing.get_or_create(db_session, ctx, ContactGetOrCreate(phone="11955554444", name="Loser"))

    assert exc_info.value.message_key == "contact.duplicate_identifier"
    assert len(db_session.scalars(select(CRMContact)).all()) == 1


def test_create_contact_rejects_duplicate_identifiers(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    existing = _lead(service, db_session, ctx, phone="11988887777", email="dup@example.com")

    with pytest.raises(ConflictError) as phone_conflict:
        service.create_contact(db_session, ctx, ContactCreate(name="Again", phone="(11) 98888-7777"))
    assert phone_conflict.value.message_key == "contact.duplicate_phone"
    assert phone_conflict.value.details == {"field": "phone", "contact_id": str(existing), "deleted": False}

    service.soft_delete_contact(db_session, ctx, existing)
    with pytest.raises(ConflictError) as email_conflict:
        service.create_contact(db_session, ctx, ContactCreate(name="Again", email="DUP@example.com"))
    assert email_conflict.value.message_key == "contact.duplicate_email"
    assert email_conflict.value.details["deleted"] is True


def test_identifiers_are_unique_per_tenant_only(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    other = AuthContext(user_id="seller-9", tenant_id="tenant-b")
    mine = _lead(service, db_session, ctx, phone="11922223333")
    theirs = _lead(service, db_session, other, phone="11922223333")

    assert mine != theirs
    with pytest.raises(NotFoundError):
        service.get_contact(db_session, other, mine)
    assert service.list_contacts(db_session, other).total == 1


def test_loss_reason_required_for_loss_statuses_and_cleared_otherwise(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        service.create_contact(db_session, ctx, ContactCreate(name="Lost", phone="11933334444", status="lost"))
    assert exc_info.value.message_key == "contact.loss_reason_required"

    contact_id = _lead(service, db_session, ctx, status="discarded", loss_reason="  no budget ")
    assert service.get_contact(db_session, ctx, contact_id).loss_reason == "no budget"

    reopened = service.update_contact(db_session, ctx, contact_id, ContactUpdate(status="contacted"))
    assert reopened.status == "contacted"
    assert reopened.loss_reason is None

    with pytest.raises(ValidationError):
        service.update_contact(db_session, ctx, contact_id, ContactUpdate(status="lost", loss_reason=" "))
    assert service.get_contact(db_session, ctx, contact_id).status == "contacted"


def test_update_rejects_blank_name_and_removing_last_identifier(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    contact_id = _lead(service, db_session, ctx, name="Named", phone="11944445555")

    with pytest.raises(ValidationError) as blank:
        service.update_contact(db_session, ctx, contact_id, ContactUpdate(name="   "))
    assert blank.value.message_key == "contact.name_blank"

    with pytest.raises(ValidationError) as missing:
        service.update_contact(db_session, ctx, contact_id, ContactUpdate(phone=None))
    assert missing.value.message_key == "contact.identifier_required"

    current = service.get_contact(db_session, ctx, contact_id)
    assert current.name == "Named"
    assert current.phone == "11944445555"


def test_update_records_diff_and_replaces_tags(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    contact_id = _lead(service, db_session, ctx, tags=["VIP", "vip", " Summer  Sale "])
    assert service.get_contact(db_session, ctx, contact_id).tags == ["summer sale", "vip"]
    audit.audit_entries.clear()

    updated = service.update_contact(
        db_session, ctx, contact_id, ContactUpdate(temperature="hot", tags=["returning"])
    )

    assert updated.temperature == "hot"
    assert updated.tags == ["returning"]
    entry = audit.audit_entries[-1]
    assert entry["action"] == "update"
    assert entry["correlation_id"] == "corr-contacts"
    assert entry["changes"]["temperature"] == {"from": None, "to": "hot"}


def test_client_cannot_be_downgraded_to_lead_without_admin(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    client_id = _lead(service, db_session, ctx, type="client")
    client = service.get_contact(db_session, ctx, client_id)
    assert client.kanban_position is None

    with pytest.raises(ValidationError) as exc_info:
        service.update_contact(db_session, ctx, client_id, ContactUpdate(type="lead"))
    assert exc_info.value.message_key == "contact.type_downgrade_forbidden"

    admin = AuthContext(user_id="admin-1", tenant_id="tenant-a", roles=["admin"])
    downgraded = service.update_contact(db_session, admin, client_id, ContactUpdate(type="lead"))
    assert downgraded.type == "lead"
    assert downgraded.kanban_position is not None


def test_convert_to_client(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    contact_id = _lead(service, db_session, ctx)

    converted = service.convert_to_client(db_session, ctx, contact_id)
    assert converted.type == "client"
    assert converted.last_purchase_at is not None

    with pytest.raises(ValidationError) as exc_info:
        service.convert_to_client(db_session, ctx, contact_id)
    assert exc_info.value.message_key == "contact.already_client"


def test_soft_deleted_contacts_are_hidden_from_reads(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    kept = _lead(service, db_session, ctx, phone="11910101010")
    removed = _lead(service, db_session, ctx, phone="11920202020")
    service.soft_delete_contact(db_session, ctx, removed)

    page = service.list_contacts(db_session, ctx)
    assert [item.id for item in page.items] == [kept]
    assert service.search_by_identifier(db_session, ctx, ContactLookup(phone="11920202020")).found is False
    assert service.get_stats(db_session, ctx).total == 1
    with pytest.raises(NotFoundError):
        service.soft_delete_contact(db_session, ctx, removed)


def test_list_contacts_filters_by_tag_search_and_type(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    tagged = _lead(service, db_session, ctx, name="Carla Souza", tags=["VIP"], origin="instagram")
    _lead(service, db_session, ctx, name="Bruno Lima", origin="landing")
    client = _lead(service, db_session, ctx, name="Carlos Client", type="client")

    assert [item.id for item in service.list_contacts(db_session, ctx, tag="vip").items] == [tagged]
    assert {item.id for item in service.list_contacts(db_session, ctx, search="carl").items} == {tagged, client}
    assert [item.id for item in service.list_contacts(db_session, ctx, type="client").items] == [client]
    assert [item.id for item in service.list_contacts(db_session, ctx, origin="instagram").items] == [tagged]

    page = service.list_contacts(db_session, ctx, sort_by="name", sort_order="asc", limit=2)
    assert page.total == 3
    assert page.limit == 2
    assert [item.name for item in page.items] == ["Bruno Lima", "Carla Souza"]


def test_search_by_identifier(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    contact_id = _lead(service, db_session, ctx, phone="5511966665555")

    result = service.search_by_identifier(db_session, ctx, ContactLookup(phone="11 96666-5555"))
    assert result.found is True
    assert result.contact is not None and result.contact.id == contact_id

    assert service.search_by_identifier(db_session, ctx, ContactLookup(email="none@example.com")).found is False
    with pytest.raises(ValidationError):
        service.search_by_identifier(db_session, ctx, ContactLookup())


def test_search_matches_wildcards_literally(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    underscored = _lead(service, db_session, ctx, name="Ana", email="ana_b@example.com")
    _lead(service, db_session, ctx, name="Anab", email="anaxb@example.com")

    assert service.list_contacts(db_session, ctx, search="%").total == 0
    assert [item.id for item in service.list_contacts(db_session, ctx, search="a_b").items] == [underscored]
    assert service.list_contacts(db_session, ctx, search="\\").total == 0


def test_failing_audit_sink_does_not_break_writes(
    db_session: Session,
    ctx: AuthContext,
    service: ContactService,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def broken_sink(entry):  # type: ignore[no-untyped-def]
        raise RuntimeError("sink offline")

    monkeypatch.setattr(audit, "_sinks", [broken_sink])
    caplog.set_level(logging.WARNING, logger="app.audit")

    created = service.create_contact(db_session, ctx, ContactCreate(name="Marta", phone="11933334444"))

    assert service.get_contact(db_session, ctx, created.id).name == "Marta"
    assert audit.audit_entries[-1]["resource_id"] == str(created.id)
    failures = [record for record in caplog.records if record.name == "app.audit"]
    assert [record.getMessage() for record in failures] == ["audit.sink_failed"]
    assert failures[0].error == "sink offline"
    assert failures[0].action == "create"



def test_new_leads_append_to_the_end_of_their_lane(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    ids = [_lead(service, db_session, ctx) for _ in range(3)]

    positions = [service.get_contact(db_session, ctx, contact_id).kanban_position for contact_id in ids]
    assert positions == [1000, 2000, 3000]


def test_kanban_move_before_and_after_anchor(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    first, second, third = (_lead(service, db_session, ctx) for _ in range(3))

    moved = service.update_kanban_position(
        db_session, ctx, third, KanbanMoveRequest(status="new", anchor_contact_id=first, placement="before")
    )
    assert moved.kanban_position == 0

    moved = service.update_kanban_position(
        db_session, ctx, third, KanbanMoveRequest(status="new", anchor_contact_id=first, placement="after")
    )
    assert moved.kanban_position == 1500

    lane = service.get_kanban_lane(db_session, ctx, "new")
    assert [card.id for card in lane.cards] == [first, third, second]
    assert any(entry["action"] == "move" for entry in audit.audit_entries)


def test_kanban_move_across_lanes(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    mover = _lead(service, db_session, ctx)
    contacted_a = _lead(service, db_session, ctx, status="contacted")
    contacted_b = _lead(service, db_session, ctx, status="contacted")
    other_lane_anchor = _lead(service, db_session, ctx, status="qualified")

    moved = service.update_kanban_position(
        db_session,
        ctx,
        mover,
        KanbanMoveRequest(status="contacted", anchor_contact_id=other_lane_anchor, placement="before"),
    )

    assert moved.status == "contacted"
    assert moved.kanban_position == 3000
    lane = service.get_kanban_lane(db_session, ctx, "contacted")
    assert [card.id for card in lane.cards] == [contacted_a, contacted_b, mover]
    assert service.get_kanban_lane(db_session, ctx, "new").total == 0


def test_kanban_move_rebalances_crowded_lane(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    first, second, mover = (_lead(service, db_session, ctx) for _ in range(3))
    db_session.execute(update(CRMContact).where(CRMContact.id == second).values(kanban_position=1005))
    db_session.commit()

    moved = service.update_kanban_position(
        db_session, ctx, mover, KanbanMoveRequest(status="new", anchor_contact_id=first, placement="after")
    )

    assert moved.kanban_position == 1500
    assert service.get_contact(db_session, ctx, first).kanban_position == 1000
    assert service.get_contact(db_session, ctx, second).kanban_position == 2000
    lane = service.get_kanban_lane(db_session, ctx, "new")
    assert [card.id for card in lane.cards] == [first, mover, second]


def test_kanban_move_into_loss_lane_requires_reason(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    contact_id = _lead(service, db_session, ctx)

    with pytest.raises(ValidationError) as exc_info:
        service.update_kanban_position(db_session, ctx, contact_id, KanbanMoveRequest(status="lost"))
    assert exc_info.value.message_key == "contact.loss_reason_required"
    assert service.get_contact(db_session, ctx, contact_id).status == "new"

    moved = service.update_kanban_position(
        db_session, ctx, contact_id, KanbanMoveRequest(status="lost", loss_reason="went silent")
    )
    assert moved.status == "lost"
    assert moved.loss_reason == "went silent"

    back = service.update_kanban_position(db_session, ctx, contact_id, KanbanMoveRequest(status="qualified"))
    assert back.loss_reason is None


def test_kanban_move_rejects_clients_and_bad_anchors(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    lead = _lead(service, db_session, ctx)
    client = _lead(service, db_session, ctx, type="client")

    with pytest.raises(NotFoundError) as client_move:
        service.update_kanban_position(db_session, ctx, client, KanbanMoveRequest(status="new"))
    assert client_move.value.message_key == "contact.kanban_lead_not_found"

    with pytest.raises(NotFoundError) as missing_anchor:
        service.update_kanban_position(
            db_session, ctx, lead, KanbanMoveRequest(status="new", anchor_contact_id=uuid.uuid4())
        )
    assert missing_anchor.value.message_key == "contact.kanban_anchor_not_found"

    with pytest.raises(ValidationError) as self_anchor:
        service.update_kanban_position(db_session, ctx, lead, KanbanMoveRequest(status="new", anchor_contact_id=lead))
    assert self_anchor.value.message_key == "contact.kanban_self_anchor"


def test_kanban_summary_counts_lanes_and_open_deals(
    db_session: Session, ctx: AuthContext, service: ContactService
) -> None:
    with_deal = _lead(service, db_session, ctx)
    _lead(service, db_session, ctx)
    _lead(service, db_session, ctx, status="qualified")
    _lead(service, db_session, ctx, type="client")
    DealService().create_deal(db_session, ctx, DealCreate(contact_id=with_deal, title="First deal"))

    summary = {lane.status: lane for lane in service.get_kanban_summary(db_session, ctx, limit_per_lane=1)}

    assert list(summary) == ["new", "contacted", "qualified", "lost", "discarded"]
    assert summary["new"].count == 2
    assert len(summary["new"].cards) == 1
    assert summary["new"].cards[0].id == with_deal
    assert summary["new"].cards[0].open_deals_count == 1
    assert summary["qualified"].count == 1
    assert summary["lost"].count == 0


def test_kanban_lane_paginates(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    ids = [_lead(service, db_session, ctx) for _ in range(3)]

    first_page = service.get_kanban_lane(db_session, ctx, "new", limit=2)
    assert [card.id for card in first_page.cards] == ids[:2]
    assert first_page.has_more is True
    assert first_page.next_offset == 2

    second_page = service.get_kanban_lane(db_session, ctx, "new", limit=2, offset=2)
    assert [card.id for card in second_page.cards] == ids[2:]
    assert second_page.has_more is False
    assert second_page.next_offset is None


def test_contact_stats(db_session: Session, ctx: AuthContext, service: ContactService) -> None:
    _lead(service, db_session, ctx)
    _lead(service, db_session, ctx)
    client = _lead(service, db_session, ctx, type="client")
    db_session.execute(update(CRMContact).where(CRMContact.id == client).values(lifetime_value_cents=12_500))
    db_session.commit()

    stats = service.get_stats(db_session, ctx)

    assert stats.total == 3
    assert stats.total_leads == 2
    assert stats.total_clients == 1
    assert stats.lifetime_value_total_cents == 12_500
    assert stats.new_last_7_days == 3
    assert stats.new_last_30_days == 3


def test_normalize_tags() -> None:
    assert normalize_tags([" Hot Lead ", "hot   lead", "", "B2B"]) == ["hot lead", "b2b"]
    assert normalize_tags(None) == []
