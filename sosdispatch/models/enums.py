"""Enumerations shared by models, schemas and services."""

from __future__ import annotations

import enum


class AlertStatus(str, enum.Enum):
    CREATED = "CREATED"
    DISPATCHED = "DISPATCHED"
    CLAIMED = "CLAIMED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVED = "ARRIVED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"
    ESCALATED = "ESCALATED"
    REJECTED = "REJECTED"


class Category(str, enum.Enum):
    MEDICAL = "MEDICAL"
    FIRE = "FIRE"
    ARMED_ROBBERY = "ARMED_ROBBERY"
    CAR_ACCIDENT = "CAR_ACCIDENT"
    DOMESTIC_VIOLENCE = "DOMESTIC_VIOLENCE"
    NATURAL_DISASTER = "NATURAL_DISASTER"
    MISSING_PERSON = "MISSING_PERSON"
    PUBLIC_DISTURBANCE = "PUBLIC_DISTURBANCE"
    OTHER = "OTHER"


class Urgency(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Visibility(str, enum.Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class Role(str, enum.Enum):
    USER = "USER"
    VOLUNTEER = "VOLUNTEER"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"  # never issued to callers


class NotificationKind(str, enum.Enum):
    CREATED = "CREATED"
    CLAIMED = "CLAIMED"
    STATUS_CHANGED = "STATUS_CHANGED"
    CANCELLED = "CANCELLED"
    ESCALATED = "ESCALATED"
