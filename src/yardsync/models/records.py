"""Local warehouse records: customers (parents), packages (children), profiles."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel


class PackageStatus(str, Enum):
    RECEIVED = "received"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    READY_FOR_PICKUP = "ready_for_pickup"
    PICKED_UP = "picked_up"


class CustomerType(str, Enum):
    REGISTERED = "registered"
    GUEST = "guest"
    PACKAGE_ONLY = "package_only"


class Customer(SQLModel, table=True):
    """
    Parent record. Imported customers carry the remote system's consignee id in
    external_id; it is deliberately not unique so duplicates can be detected
    and flagged instead of rejected at insert time.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: Optional[str] = Field(default=None, index=True)
    customer_type: str = Field(default=CustomerType.GUEST.value)
    full_name: str = Field(index=True)
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    user_id: Optional[int] = Field(default=None, index=True)

    # Set by reconciliation when a parent had to be synthesized
    is_placeholder: bool = False
    mapping_confidence: Optional[float] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    packages: List["Package"] = Relationship(back_populates="customer")


class Package(SQLModel, table=True):
    """Child record. One row per remote shipment (or per shipment item)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: Optional[str] = Field(default=None, unique=True, index=True)
    customer_id: int = Field(foreign_key="customer.id", index=True)
    tracking_number: str = Field(index=True)
    description: str = ""
    status: str = Field(default=PackageStatus.RECEIVED.value)

    weight: Optional[float] = None
    dimensions: Optional[str] = None
    package_value: Optional[float] = None

    # Fields owned by the remote warehouse system
    warehouse_location: Optional[str] = None
    consolidation_status: Optional[str] = None
    remote_reference_number: Optional[str] = None
    sender_name: Optional[str] = None
    sender_address: Optional[str] = None
    delivery_address: Optional[str] = None
    raw_remote_json: Optional[str] = None
    last_remote_sync: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    customer: Optional[Customer] = Relationship(back_populates="packages")


class Profile(SQLModel, table=True):
    """Registered user profile. Used to rebuild a customer a package points at."""

    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
