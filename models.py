from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

Role = Literal["normal", "becario", "admin"]
EquipmentStatus = Literal["available", "maintenance", "out_of_service"]
LoanStatus = Literal["active", "returned", "overdue"]
NotificationKind = Literal["overdue_loan", "pending_return", "low_stock", "general", "system"]
NotificationState = Literal["pending", "sent", "read"]

# ---------- Equipment ----------
class EquipmentIn(BaseModel):
    name: str
    serial_number: str
    description: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    total_quantity: int = Field(default=1, ge=0)

class EquipmentUpdate(BaseModel):
    name: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    total_quantity: Optional[int] = Field(default=None, ge=0)
    status: Optional[EquipmentStatus] = None
    is_active: Optional[bool] = None

class Equipment(EquipmentIn):
    id: str
    available_quantity: int
    status: EquipmentStatus = "available"
    is_active: bool = True
    version: int
    created_at: datetime
    updated_at: datetime

class EquipmentMeta(BaseModel):
    total: int
    limit: int
    offset: int
    total_pages: int

class Movement(BaseModel):
    id: str
    equipment_id: str
    movement_type: str
    quantity: int
    previous_quantity: int
    new_quantity: int
    loan_id: Optional[str] = None
    performed_by: str
    notes: Optional[str] = None
    created_at: datetime

# ---------- Profile ----------
class ProfileIn(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    student_id: str
    career: Optional[str] = None
    phone: Optional[str] = None

class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    student_id: Optional[str] = None
    career: Optional[str] = None
    phone: Optional[str] = None
    rfid: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None

class Profile(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    student_id: str
    career: Optional[str] = None
    phone: Optional[str] = None
    rfid: Optional[str] = None
    role: Role = "normal"
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

# ---------- Loan ----------
class LoanIn(BaseModel):
    user_id: str
    equipment_id: str
    quantity: int = 1
    due_at: Optional[datetime] = None
    notes: Optional[str] = None
    lent_by: Optional[str] = None

class ReturnIn(BaseModel):
    quantity: int
    returned_by: Optional[str] = None
    notes: Optional[str] = None

class Loan(BaseModel):
    id: str
    user_id: str
    equipment_id: str
    quantity_lent: int
    quantity_returned: int = 0
    status: LoanStatus = "active"
    loaned_at: datetime
    due_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    notes: Optional[str] = None
    lent_by: Optional[str] = None
    returned_by: Optional[str] = None

    @property
    def outstanding(self) -> int:
        return self.quantity_lent - self.quantity_returned

class LoanGroup(BaseModel):
    equipment_id: str
    equipment_name: str
    loans: list[Loan]
    total_lent: int
    total_returned: int
    total_pending: int

class ValidationResult(BaseModel):
    is_valid: bool
    message: str
    available: Optional[int] = None
    pending: Optional[int] = None

# ---------- Notification ----------
class Notification(BaseModel):
    id: str
    recipient_id: str
    kind: NotificationKind = "general"
    subject: str
    content: str
    sent_by: Optional[str] = None
    sent_at: datetime
    state: NotificationState = "sent"

# ---------- Integrity / monitor ----------
class Finding(BaseModel):
    equipment_id: str
    name: str
    total_quantity: int
    available_quantity: int
    outstanding: int
    mismatch: bool
    category: str
    message: str

class Correction(BaseModel):
    equipment_id: str
    name: str
    previous_available: int
    new_available: int
    corrected_at: datetime

class IntegrityReport(BaseModel):
    timestamp: datetime
    total_equipment: int
    inconsistent_equipment: int
    findings: list[Finding]
    corrections: Optional[list[Correction]] = None

class Alert(BaseModel):
    id: str
    category: str
    severity: str
    title: str
    message: str
    equipment_id: Optional[str] = None
    equipment_name: Optional[str] = None
    created_at: datetime
    resolved: bool

class MonitorConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = Field(default=None, ge=1)
    notify_admins: Optional[bool] = None
    auto_correct: Optional[bool] = None

class MonitorStatus(BaseModel):
    state: str
    enabled: bool
    interval_minutes: int
    notify_admins: bool
    auto_correct: bool
    last_tick_at: Optional[datetime] = None
    active_alerts: int
