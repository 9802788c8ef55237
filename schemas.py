from pydantic import BaseModel, Field
from typing import List, Optional, Any, Dict, Union
from datetime import date
from enum import Enum

from services.ledger import PriceRole


class SettlementRole(str, Enum):
    DISTRIBUTOR = "distributor"
    RETAILER = "retailer"
    CONSUMER = "consumer"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


# Authentication Models
class LoginRequest(BaseModel):
    username: str
    password: str

class LoginResponse(BaseModel):
    success: bool
    token: str
    user: dict
    message: str

class UserInfo(BaseModel):
    id: str
    username: str
    role: str
    wallet_address: Optional[str] = None


# Request Models
class RegisterBatchRequest(BaseModel):
    cropType: str = Field(..., description="Crop name, free text")
    quantityKg: int = Field(..., description="Quantity in kilograms")
    basePriceINR: int = Field(..., description="Farmer ask in whole rupees")
    harvestDate: Union[date, int] = Field(..., description="Harvest date or unix seconds")
    metadataCID: Optional[str] = Field(None, description="Off-chain metadata pointer; inline metadata when omitted")
    minPriceINR: Optional[int] = Field(None, description="Farmer floor price")
    farmerAddress: Optional[str] = Field(None, description="Register on behalf of this farmer")

class TransferRequest(BaseModel):
    batchId: int
    toAddress: str

class SetPriceRequest(BaseModel):
    batchId: int
    role: PriceRole
    priceINR: int

class RolePriceRequest(BaseModel):
    batchId: int
    priceINR: int

class CheckoutSessionRequest(BaseModel):
    batchId: int
    role: SettlementRole
    amountPaise: int = Field(..., description="Order amount in paise; raised to the gateway minimum")
    toAddress: Optional[str] = None
    distributorPriceINR: Optional[int] = None
    consumerPriceINR: Optional[int] = None
    currency: str = "INR"

class ConfirmPaymentRequest(BaseModel):
    sessionId: str = Field(..., description="Razorpay order id")
    batchId: Optional[int] = None
    toAddress: Optional[str] = None

class QueueItemRequest(BaseModel):
    batchId: Optional[str] = None
    farmerAadhaar: Optional[str] = None
    summary: Optional[str] = None

class DecisionRequest(BaseModel):
    decision: Decision
    notes: Optional[str] = None

class VerifyBatchRequest(BaseModel):
    farmerAadhaar: Optional[str] = None
    estimatedQuantity: Optional[int] = None
    sampleWeight: Optional[float] = None
    qualityGrade: Optional[str] = None
    moistureContent: Optional[float] = None
    verificationCenterId: Optional[str] = None
    verifierPhoto: Optional[str] = None
    testingNotes: Optional[str] = None


# Response Models
class BatchDates(BaseModel):
    harvest: int
    created: int
    boughtByDistributor: int = 0
    boughtByRetailer: int = 0
    boughtByConsumer: int = 0

class BatchPrices(BaseModel):
    baseINR: str
    minINR: str
    byDistributorINR: str = "0"
    byRetailerINR: str = "0"

class BatchResponse(BaseModel):
    id: str
    cropType: str
    quantityKg: str
    farmer: str
    distributor: str
    retailer: str
    consumer: str
    currentOwner: str
    holderRole: str
    metadataCID: str
    dates: BatchDates
    prices: BatchPrices
    verificationStatus: int = 0
    source: str = "contract"

class BatchListResponse(BaseModel):
    batches: List[BatchResponse]

class RegisterBatchResponse(BaseModel):
    ok: bool = True
    batchId: Optional[str] = None
    tx: str
    usedFallback: bool = False
    minPriceTx: Optional[str] = None

class WriteResponse(BaseModel):
    ok: bool = True
    batchId: str
    tx: Optional[str] = None
    changed: bool

class CheckoutSessionResponse(BaseModel):
    id: str
    amount: int
    currency: str
    order: Dict[str, Any]

class ConfirmPaymentResponse(BaseModel):
    ok: bool = True
    sessionId: str
    tx: Optional[str] = None
    priceTx: Optional[str] = None

class QueueItem(BaseModel):
    id: str
    status: str
    createdAt: str
    batchId: Optional[str] = None
    farmerAadhaar: Optional[str] = None
    summary: Optional[str] = None
    notes: Optional[str] = None
    decidedAt: Optional[str] = None

class QueueItemResponse(BaseModel):
    success: bool = True
    item: QueueItem

class QueueListResponse(BaseModel):
    success: bool = True
    items: List[QueueItem]

class VerifyBatchResponse(BaseModel):
    success: bool = True
    message: str
    batchId: str
    verificationData: Dict[str, Any]

class QRCodeResponse(BaseModel):
    batchId: str
    url: str
    qrImageBase64: str
