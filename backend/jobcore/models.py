"""Pydantic models for jobs, catalog entities, API requests and responses."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


JobStatus = Literal["estimate", "workOrder", "invoice", "completed", "cancelled"]
PaymentStatus = Literal["unpaid", "partial", "paid"]
VisualQuoteStatus = Literal["none", "pending", "complete", "failed"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
PaymentMethod = Literal["Cash", "Credit Card", "Check", "Bank Transfer", "Other"]
AdjustmentType = Literal["percentage", "fixedAmount"]
PhotoType = Literal["before", "after"]
ActorRole = Literal["admin", "technician"]


# --- Catalog (owned by external collaborators, read-only here) ---


class ProductUsage(BaseModel):
    productId: str
    quantity: float


class Service(BaseModel):
    id: str
    name: str
    description: str = ""
    basePrice: float = Field(ge=0)
    isPackage: bool = False
    serviceIds: List[str] = Field(default_factory=list)
    isDealerPackage: bool = False
    estimatedDurationHours: Optional[float] = None
    productsUsed: List[ProductUsage] = Field(default_factory=list)


class PricingRule(BaseModel):
    id: str
    factor: str
    adjustmentType: AdjustmentType
    adjustmentValue: float


class PricingMatrix(BaseModel):
    id: str
    name: str
    appliesToServiceIds: List[str] = Field(default_factory=list)
    rules: List[PricingRule] = Field(default_factory=list)


class Upcharge(BaseModel):
    id: str
    name: str
    description: str = ""
    defaultAmount: float
    isPercentage: bool = False


class Promotion(BaseModel):
    id: str
    code: str
    type: AdjustmentType
    value: float
    isActive: bool = True


class Technician(BaseModel):
    id: str
    name: str
    email: Optional[str] = None


class Catalog(BaseModel):
    """Snapshot of the pricing and staff catalogs used for one computation."""

    services: List[Service] = Field(default_factory=list)
    pricingMatrices: List[PricingMatrix] = Field(default_factory=list)
    upcharges: List[Upcharge] = Field(default_factory=list)
    technicians: List[Technician] = Field(default_factory=list)

    def service_map(self) -> dict:
        return {s.id: s for s in self.services}

    def rule_map(self) -> dict:
        # Rules are addressed by id across all matrices
        return {r.id: r for m in self.pricingMatrices for r in m.rules}

    def upcharge_map(self) -> dict:
        return {u.id: u for u in self.upcharges}


class CompanyProfile(BaseModel):
    name: str = ""
    enableSmartInventory: bool = False


class Actor(BaseModel):
    """Current caller as supplied by the identity provider."""

    id: str
    role: ActorRole


# --- Job ---


class JobItem(BaseModel):
    id: str
    serviceId: str
    quantity: float = Field(default=1, ge=0)
    unitPrice: float = Field(ge=0)
    appliedPricingRuleIds: List[str] = Field(default_factory=list)
    addedUpchargeIds: List[str] = Field(default_factory=list)
    total: float = 0.0
    checklistCompletedItems: Optional[List[str]] = None


class Payment(BaseModel):
    id: str
    amount: float
    paymentDate: datetime
    method: PaymentMethod
    notes: Optional[str] = None


class Photo(BaseModel):
    id: str
    storageId: str
    type: PhotoType
    timestamp: datetime


class Job(BaseModel):
    id: str
    customerId: str
    vehicleId: str
    status: JobStatus = "estimate"
    createdAt: datetime
    estimateDate: datetime
    workOrderDate: Optional[datetime] = None
    invoiceDate: Optional[datetime] = None
    completionDate: Optional[datetime] = None
    notes: Optional[str] = None
    jobItems: List[JobItem] = Field(default_factory=list)
    payments: List[Payment] = Field(default_factory=list)
    paymentReceived: float = 0.0
    paymentStatus: PaymentStatus = "unpaid"
    appliedPromotionId: Optional[str] = None
    discountAmount: float = 0.0
    totalAmount: float = 0.0
    assignedTechnicianIds: List[str] = Field(default_factory=list)
    photos: List[Photo] = Field(default_factory=list)
    customerApprovalStatus: Optional[ApprovalStatus] = None
    customerSignatureStorageId: Optional[str] = None
    approvalTimestamp: Optional[datetime] = None
    publicLinkKey: str
    visualQuoteStatus: VisualQuoteStatus = "none"
    visualQuoteStorageIds: List[str] = Field(default_factory=list)
    visualQuoteGeneration: int = 0
    inventoryDebited: bool = False


class JobTotals(BaseModel):
    subtotal: float
    discountAmount: float
    totalAmount: float
    appliedPromotionId: Optional[str] = None


# --- Requests ---


class JobDraftRequest(BaseModel):
    customerId: str
    vehicleId: str


class JobItemInput(BaseModel):
    """A desired job line. Totals are always computed server-side."""

    id: Optional[str] = None
    serviceId: str
    quantity: float = Field(default=1, ge=0)
    unitPrice: Optional[float] = Field(default=None, ge=0)
    appliedPricingRuleIds: List[str] = Field(default_factory=list)
    addedUpchargeIds: List[str] = Field(default_factory=list)


class JobSaveRequest(BaseModel):
    """Full desired state of a job; `id` absent means create."""

    id: Optional[str] = None
    customerId: str
    vehicleId: str
    status: JobStatus = "estimate"
    notes: Optional[str] = None
    promotionCode: Optional[str] = None
    jobItems: List[JobItemInput] = Field(default_factory=list)
    assignedTechnicianIds: Optional[List[str]] = None


class PaymentRequest(BaseModel):
    amount: float = Field(allow_inf_nan=False)
    paymentDate: Optional[datetime] = None
    method: PaymentMethod = "Cash"
    notes: Optional[str] = None


class StatusTransitionRequest(BaseModel):
    status: JobStatus


class ApprovalRequest(BaseModel):
    signatureStorageId: str


class PhotoRequest(BaseModel):
    storageId: str
    type: PhotoType


class ChecklistProgressRequest(BaseModel):
    completedTasks: List[str] = Field(default_factory=list)


class VisualQuoteRequest(BaseModel):
    storageIds: List[str] = Field(min_length=1)


class ServiceDescriptionRequest(BaseModel):
    serviceName: str = Field(min_length=1, max_length=200)


class VisualQuoteTaskPayload(BaseModel):
    jobId: str
    generation: int


class InventoryDebitTaskPayload(BaseModel):
    jobId: str


# --- Analysis ---


class QuoteSuggestion(BaseModel):
    """Structured result of the external image-analysis function."""

    suggestedServiceIds: List[str] = Field(default_factory=list)
    suggestedUpchargeIds: List[str] = Field(default_factory=list)


class ImagePart(BaseModel):
    data: bytes
    mimeType: str = "image/jpeg"


# --- Reports ---


class RevenueSeries(BaseModel):
    labels: List[str] = Field(default_factory=list)
    data: List[float] = Field(default_factory=list)


class ServicePerformanceRow(BaseModel):
    service: Service
    count: int
    revenue: float


class TechnicianPerformanceRow(BaseModel):
    technician: Technician
    completedJobs: int
    revenue: float
    averageJobValue: float


class ReportsData(BaseModel):
    revenueOverTime: RevenueSeries
    servicePerformance: List[ServicePerformanceRow]
    technicianLeaderboard: List[TechnicianPerformanceRow]
    technicians: List[Technician]


# --- Customer portal ---


class PortalView(BaseModel):
    """What a customer sees through the job's public link."""

    job: Job
    customer: Optional[Dict[str, Any]] = None
    vehicle: Optional[Dict[str, Any]] = None
    services: List[Service] = Field(default_factory=list)
