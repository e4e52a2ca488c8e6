"""
RecordRepository: the engine's only door into local customer/package rows.

Upserts key off external ids, so replaying the same remote data never
creates duplicates. Each method opens its own short SQLModel session; nothing
is held open across awaits.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from yardsync.models.records import Customer, CustomerType, Package, Profile
from yardsync.sync.errors import IntegrityViolation
from yardsync.sync.matching import ParentMatch, ParentMatcher, match_parent

logger = logging.getLogger(__name__)

EXTERNAL_ID_CONFIDENCE = 1.0
HEURISTIC_CONFIDENCE = 0.75


@dataclass(frozen=True)
class UpsertResult:
    id: int
    created: bool


@dataclass(frozen=True)
class DuplicateGroup:
    """Customers that collapse onto the same identity."""

    field: str  # "external_id" or "user_id"
    value: str
    customer_ids: Tuple[int, ...]


class RecordRepository:
    """CRUD over Customer (parent) and Package (child) rows."""

    def __init__(self, engine, matcher: ParentMatcher = match_parent):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            matcher: Heuristic used when a consignee has no known external id.
        """
        self.engine = engine
        self.matcher = matcher

    # ─── Parents ──────────────────────────────────────────────────────────────

    def upsert_parent(self, match: ParentMatch, fields: Dict[str, Any]) -> UpsertResult:
        """
        Resolve the customer for an imported record, creating it if needed.

        Resolution order: exact external id, then the heuristic matcher over
        every customer not bound to another external id, then a new row.
        Existing values are only overwritten by non-empty incoming values.
        """
        with Session(self.engine) as s:
            customer = None
            confidence = EXTERNAL_ID_CONFIDENCE
            if match.external_id:
                customer = s.exec(
                    select(Customer)
                    .where(Customer.external_id == match.external_id)
                    .order_by(Customer.id)
                ).first()

            if customer is None:
                # Name comparison is the matcher's job; only rule out customers
                # bound to a different external id
                query = select(Customer).order_by(Customer.id)
                if match.external_id:
                    query = query.where(or_(
                        Customer.external_id == None,  # noqa: E711
                        Customer.external_id == match.external_id,
                    ))
                customer = self.matcher(match, s.exec(query).all())
                confidence = HEURISTIC_CONFIDENCE

            if customer is None:
                customer = Customer(
                    customer_type=CustomerType.GUEST.value,
                    mapping_confidence=EXTERNAL_ID_CONFIDENCE,
                    **_non_empty(fields),
                )
                s.add(customer)
                s.commit()
                s.refresh(customer)
                logger.debug("Created customer %s for %r", customer.id, match.full_name)
                return UpsertResult(id=customer.id, created=True)

            for k, v in _non_empty(fields).items():
                setattr(customer, k, v)
            if customer.is_placeholder:
                # A real consignee replaces the synthesized stand-in
                customer.is_placeholder = False
                customer.customer_type = CustomerType.GUEST.value
                customer.mapping_confidence = confidence
            elif customer.mapping_confidence is None:
                customer.mapping_confidence = confidence
            customer.updated_at = datetime.utcnow()
            s.add(customer)
            s.commit()
            return UpsertResult(id=customer.id, created=False)

    def create_parent(self, fields: Dict[str, Any], parent_id: Optional[int] = None) -> int:
        """
        Insert a customer, optionally with a fixed primary key. Returns its id.

        Raises:
            IntegrityViolation: if the insert breaks a constraint (e.g. the id is taken).
        """
        with Session(self.engine) as s:
            customer = Customer(id=parent_id, **fields)
            s.add(customer)
            try:
                s.commit()
            except IntegrityError as exc:
                s.rollback()
                raise IntegrityViolation(f"Could not create customer {parent_id}: {exc.orig}") from exc
            s.refresh(customer)
            return customer.id

    def find_profile(self, profile_id: int) -> Optional[Profile]:
        with Session(self.engine) as s:
            return s.get(Profile, profile_id)

    def find_customer_for_user(self, user_id: int) -> Optional[Customer]:
        """The oldest customer linked to this registered user, if any."""
        with Session(self.engine) as s:
            return s.exec(
                select(Customer).where(Customer.user_id == user_id).order_by(Customer.id)
            ).first()

    # ─── Children ─────────────────────────────────────────────────────────────

    def upsert_child(self, external_id: str, fields: Dict[str, Any]) -> UpsertResult:
        """Insert or update the package with this external id. fields must carry customer_id."""
        now = datetime.utcnow()
        values = {k: v for k, v in fields.items() if k != "external_id"}
        with Session(self.engine) as s:
            package = s.exec(
                select(Package).where(Package.external_id == external_id)
            ).first()

            if package is None:
                package = Package(external_id=external_id, last_remote_sync=now, **values)
                s.add(package)
                s.commit()
                s.refresh(package)
                return UpsertResult(id=package.id, created=True)

            for k, v in values.items():
                setattr(package, k, v)
            package.last_remote_sync = now
            package.updated_at = now
            s.add(package)
            s.commit()
            return UpsertResult(id=package.id, created=False)

    def get_package(self, package_id: int) -> Optional[Package]:
        with Session(self.engine) as s:
            return s.get(Package, package_id)

    def set_package_status(self, package_id: int, status: str) -> Optional[str]:
        """
        Commit a new status for a package.

        Returns:
            The previous status, or None if the package does not exist.
        """
        with Session(self.engine) as s:
            package = s.get(Package, package_id)
            if package is None:
                return None
            old_status = package.status
            package.status = status
            package.updated_at = datetime.utcnow()
            s.add(package)
            s.commit()
            return old_status

    def reassign_children(self, from_parent_id: int, to_parent_id: int) -> int:
        """Point every package of one customer id at another. Returns the number moved."""
        with Session(self.engine) as s:
            result = s.connection().execute(
                update(Package)
                .where(Package.customer_id == from_parent_id)
                .values(customer_id=to_parent_id, updated_at=datetime.utcnow())
            )
            s.commit()
            return result.rowcount or 0

    # ─── Integrity queries ────────────────────────────────────────────────────

    def find_orphans(self) -> List[Package]:
        """Packages whose customer_id points at no customer row."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(Package)
                .outerjoin(Customer, Package.customer_id == Customer.id)
                .where(Customer.id == None)  # noqa: E711
                .order_by(Package.id)
            ).all())

    def find_duplicate_identities(self) -> List[DuplicateGroup]:
        """Groups of customers sharing a non-null external_id or user_id."""
        groups: List[DuplicateGroup] = []
        with Session(self.engine) as s:
            for column, name in ((Customer.external_id, "external_id"), (Customer.user_id, "user_id")):
                values = s.exec(
                    select(column)
                    .where(column != None)  # noqa: E711
                    .group_by(column)
                    .having(func.count(Customer.id) > 1)
                ).all()
                for value in values:
                    ids = s.exec(
                        select(Customer.id).where(column == value).order_by(Customer.id)
                    ).all()
                    groups.append(DuplicateGroup(field=name, value=str(value), customer_ids=tuple(ids)))
        return groups

    def find_profiles_without_customer(self) -> List[Profile]:
        """Registered profiles that no customer row references through user_id."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(Profile)
                .outerjoin(Customer, Customer.user_id == Profile.id)
                .where(Customer.id == None)  # noqa: E711
                .order_by(Profile.id)
            ).all())


def _non_empty(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None and v != ""}
