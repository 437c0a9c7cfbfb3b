from typing import Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, Enum, ForeignKeyConstraint, Index, Integer, Numeric, PrimaryKeyConstraint, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import datetime
import decimal
import uuid

from .db_enums import (
    ClassStatusEnum,
    InvoiceStatusEnum,
    PaymentMethodEnum,
    TransferFeeModeEnum,
    AuditActionEnum,
    AuditEntityEnum,
    ActorRole,
    InvoiceActivityEnum,
    NotificationStatusEnum,
)

JSONType = JSON().with_variant(JSONB(), 'postgresql')

def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Guardians(Base):
    __tablename__ = 'guardians'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='guardians_pkey'),
        UniqueConstraint('email', name='guardians_email_key')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    last_name: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    currency: Mapped[str] = mapped_column(Text, default='USD')

    # Balance store
    total_hours: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 3), default=decimal.Decimal('0'))
    auto_total_hours: Mapped[bool] = mapped_column(Boolean, default=True)
    cumulative_consumed_hours: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 3), default=decimal.Decimal('0'))

    # Billing settings; NULL means "use the global default"
    hourly_rate: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(10, 2))
    transfer_fee_mode: Mapped[Optional[str]] = mapped_column(Enum(*TransferFeeModeEnum.get_all_names(), name='transfer_fee_mode_enum'))
    transfer_fee_value: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(10, 2))

    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)

    students: Mapped[list['Students']] = relationship('Students', back_populates='guardian', lazy='selectin')

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Students(Base):
    __tablename__ = 'students'
    __table_args__ = (
        ForeignKeyConstraint(['guardian_id'], ['guardians.id'], ondelete='CASCADE', name='students_guardian_id_fkey'),
        PrimaryKeyConstraint('id', name='students_pkey'),
        Index('idx_students_guardian', 'guardian_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guardian_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    last_name: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    hours_remaining: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 3), default=decimal.Decimal('0'))

    guardian: Mapped['Guardians'] = relationship('Guardians', back_populates='students')

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Classes(Base):
    __tablename__ = 'classes'
    __table_args__ = (
        ForeignKeyConstraint(['guardian_id'], ['guardians.id'], ondelete='CASCADE', name='classes_guardian_id_fkey'),
        ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='SET NULL', name='classes_student_id_fkey'),
        ForeignKeyConstraint(['billed_in_invoice_id'], ['invoices.id'], ondelete='SET NULL', name='classes_billed_in_invoice_id_fkey'),
        PrimaryKeyConstraint('id', name='classes_pkey'),
        Index('idx_classes_guardian_scheduled', 'guardian_id', 'scheduled_at'),
        Index('idx_classes_billed_invoice', 'billed_in_invoice_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guardian_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    student_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    student_name: Mapped[Optional[str]] = mapped_column(Text)
    teacher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    subject: Mapped[Optional[str]] = mapped_column(Text)
    scheduled_at: Mapped[datetime.datetime] = mapped_column(DateTime)
    duration: Mapped[int] = mapped_column(Integer, default=60)  # minutes
    status: Mapped[str] = mapped_column(Enum(*ClassStatusEnum.get_all_names(), name='class_status_enum'), default=ClassStatusEnum.SCHEDULED.value)

    # Class report
    count_absent_for_billing: Mapped[bool] = mapped_column(Boolean, default=True)
    report_submitted_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    report_notes: Mapped[Optional[str]] = mapped_column(Text)

    # Billing links and flags
    billed_in_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    excluded_from_billing: Mapped[bool] = mapped_column(Boolean, default=False)
    exempt_from_guardian: Mapped[bool] = mapped_column(Boolean, default=False)
    # hours the ledger currently holds against this class
    charged_hours: Mapped[decimal.Decimal] = mapped_column(Numeric(8, 3), default=decimal.Decimal('0'))

    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    student: Mapped[Optional['Students']] = relationship('Students', lazy='selectin')


class Invoices(Base):
    __tablename__ = 'invoices'
    __table_args__ = (
        ForeignKeyConstraint(['guardian_id'], ['guardians.id'], ondelete='CASCADE', name='invoices_guardian_id_fkey'),
        PrimaryKeyConstraint('id', name='invoices_pkey'),
        UniqueConstraint('invoice_number', name='invoices_invoice_number_key'),
        Index('idx_invoices_guardian_created', 'guardian_id', 'created_at')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(64))
    guardian_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    status: Mapped[str] = mapped_column(Enum(*InvoiceStatusEnum.get_all_names(), name='invoice_status_enum'), default=InvoiceStatusEnum.DRAFT.value)
    period_start: Mapped[datetime.datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime.datetime] = mapped_column(DateTime)
    due_date: Mapped[Optional[datetime.date]] = mapped_column(Date)

    # guardianFinancial snapshot, frozen at publish time
    hourly_rate: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    transfer_fee_mode: Mapped[str] = mapped_column(Enum(*TransferFeeModeEnum.get_all_names(), name='transfer_fee_mode_enum'), default=TransferFeeModeEnum.FIXED.value)
    transfer_fee_value: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    transfer_fee_amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    transfer_fee_waived: Mapped[bool] = mapped_column(Boolean, default=False)
    financials_frozen_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)

    coverage: Mapped[Optional[dict]] = mapped_column(JSONType)

    tax_rate: Mapped[decimal.Decimal] = mapped_column(Numeric(6, 3), default=decimal.Decimal('0'))
    discount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    late_fee: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    subtotal: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    tax: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    total: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    hours_covered: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 3), default=decimal.Decimal('0'))
    paid_amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    adjustment_total: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))
    refunded_amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2), default=decimal.Decimal('0'))

    published_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    paid_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    items: Mapped[list['InvoiceItems']] = relationship(
        'InvoiceItems', back_populates='invoice', lazy='selectin',
        cascade='all, delete-orphan', order_by='InvoiceItems.date'
    )
    payment_logs: Mapped[list['InvoicePaymentLogs']] = relationship(
        'InvoicePaymentLogs', back_populates='invoice', lazy='selectin',
        cascade='all, delete-orphan', order_by='InvoicePaymentLogs.processed_at'
    )
    activity_log: Mapped[list['InvoiceActivity']] = relationship(
        'InvoiceActivity', back_populates='invoice', lazy='selectin',
        cascade='all, delete-orphan', order_by='InvoiceActivity.at'
    )


class InvoiceItems(Base):
    __tablename__ = 'invoice_items'
    __table_args__ = (
        ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE', name='invoice_items_invoice_id_fkey'),
        PrimaryKeyConstraint('id', name='invoice_items_pkey'),
        Index('idx_invoice_items_class', 'class_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    class_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    student_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    student_name: Mapped[Optional[str]] = mapped_column(Text)
    description: Mapped[str] = mapped_column(Text)
    date: Mapped[datetime.datetime] = mapped_column(DateTime)
    duration: Mapped[int] = mapped_column(Integer)  # minutes
    rate: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    class_status: Mapped[Optional[str]] = mapped_column(Enum(*ClassStatusEnum.get_all_names(), name='class_status_enum'))

    invoice: Mapped['Invoices'] = relationship('Invoices', back_populates='items')


class InvoicePaymentLogs(Base):
    __tablename__ = 'invoice_payment_logs'
    __table_args__ = (
        ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE', name='invoice_payment_logs_invoice_id_fkey'),
        PrimaryKeyConstraint('id', name='invoice_payment_logs_pkey'),
        Index('idx_invoice_payment_logs_invoice', 'invoice_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(10, 2))
    method: Mapped[str] = mapped_column(Enum(*PaymentMethodEnum.get_all_names(), name='payment_method_enum'), default=PaymentMethodEnum.MANUAL.value)
    paid_hours: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(10, 3))
    transaction_id: Mapped[Optional[str]] = mapped_column(Text)
    note: Mapped[Optional[str]] = mapped_column(Text)
    processed_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    processed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)

    # snapshot
    guardian_balance_before: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(12, 3))
    guardian_balance_after: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(12, 3))
    invoice_remaining_before: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(10, 2))
    invoice_remaining_after: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(10, 2))

    invoice: Mapped['Invoices'] = relationship('Invoices', back_populates='payment_logs')


class InvoiceActivity(Base):
    __tablename__ = 'invoice_activity'
    __table_args__ = (
        ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE', name='invoice_activity_invoice_id_fkey'),
        PrimaryKeyConstraint('id', name='invoice_activity_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    actor: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    action: Mapped[str] = mapped_column(Enum(*InvoiceActivityEnum.get_all_names(), name='invoice_activity_enum'))
    at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    note: Mapped[Optional[str]] = mapped_column(Text)
    diff: Mapped[Optional[dict]] = mapped_column(JSONType)

    invoice: Mapped['Invoices'] = relationship('Invoices', back_populates='activity_log')


class AuditEntries(Base):
    __tablename__ = 'audit_entries'
    __table_args__ = (
        ForeignKeyConstraint(['original_log_id'], ['audit_entries.id'], name='audit_entries_original_log_id_fkey'),
        PrimaryKeyConstraint('id', name='audit_entries_pkey'),
        Index('idx_audit_entity_timestamp', 'entity_type', 'entity_id', 'timestamp'),
        Index('idx_audit_guardian_timestamp', 'guardian_id', 'timestamp'),
        Index('idx_audit_original_log', 'original_log_id')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(Enum(*AuditActionEnum.get_all_names(), name='audit_action_enum'))
    entity_type: Mapped[str] = mapped_column(Enum(*AuditEntityEnum.get_all_names(), name='audit_entity_enum'))
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    guardian_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    actor: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    actor_role: Mapped[str] = mapped_column(Enum(*ActorRole.get_all_names(), name='actor_role_enum'), default=ActorRole.SYSTEM.value)
    before: Mapped[Optional[dict]] = mapped_column(JSONType)
    after: Mapped[Optional[dict]] = mapped_column(JSONType)
    reason: Mapped[Optional[str]] = mapped_column(String(500))
    meta: Mapped[Optional[dict]] = mapped_column('metadata', JSONType)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    original_log_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class Notifications(Base):
    __tablename__ = 'notifications'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='notifications_pkey'),
        Index('idx_notifications_status_next', 'status', 'next_attempt_at')
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient: Mapped[str] = mapped_column(Text)
    title: Mapped[str] = mapped_column(Text)
    message: Mapped[str] = mapped_column(Text)
    meta: Mapped[Optional[dict]] = mapped_column('metadata', JSONType)
    status: Mapped[str] = mapped_column(Enum(*NotificationStatusEnum.get_all_names(), name='notification_status_enum'), default=NotificationStatusEnum.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    next_attempt_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    delivered_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
