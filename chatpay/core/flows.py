"""
Per-flow-kind conversation state.

Each flow kind is its own dataclass carrying only the fields that flow
collects, plus the fixed step sequence it walks through. A flow's step only
moves forward one position at a time; leaving the sequence any other way
means discarding the whole state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple

from chatpay.core.models import BatchItem, Quote


class FlowKind(str, Enum):
    SEND = "send"
    WITHDRAW = "withdraw"
    OFFRAMP = "offramp"
    BATCH = "batch"


class SendStep(str, Enum):
    CURRENCY = "currency"
    AMOUNT = "amount"
    DESTINATION = "destination"
    CONFIRM = "confirm"


class WithdrawStep(str, Enum):
    CURRENCY = "currency"
    AMOUNT = "amount"
    WALLET = "wallet"
    CONFIRM = "confirm"


class OfframpStep(str, Enum):
    CURRENCY = "currency"
    AMOUNT = "amount"
    QUOTE = "quote"
    WALLET_ID = "wallet_id"
    CUSTOMER_NAME = "customer_name"
    BUSINESS_NAME = "business_name"
    EMAIL = "email"
    COUNTRY = "country"
    CONFIRM = "confirm"


class BatchStep(str, Enum):
    BATCH_CURRENCY = "batch_currency"
    BATCH_AMOUNT = "batch_amount"
    BATCH_RECIPIENTS = "batch_recipients"
    BATCH_CONFIRM = "batch_confirm"


class FlowStateError(Exception):
    """Illegal step transition or a field populated ahead of its step."""


@dataclass
class FlowState:
    """
    Base for one user's in-progress flow.

    Subclasses declare ``kind``, the ordered ``steps`` and ``field_steps``,
    which maps each collected field to the step whose input produces it.
    """

    kind: ClassVar[FlowKind]
    steps: ClassVar[Tuple[Enum, ...]]
    field_steps: ClassVar[Dict[str, Enum]]

    user_id: int
    step: Enum = None

    def __post_init__(self):
        if self.step is None:
            self.step = self.steps[0]
        elif self.step not in self.steps:
            raise FlowStateError(f"{self.step} is not a {self.kind.value} step")

    @property
    def step_index(self) -> int:
        return self.steps.index(self.step)

    @property
    def is_last_step(self) -> bool:
        return self.step_index == len(self.steps) - 1

    def advance(self) -> Enum:
        """Move to the next step in the sequence and return it."""
        if self.is_last_step:
            raise FlowStateError(f"{self.kind.value} flow has no step after {self.step.value}")
        self.step = self.steps[self.step_index + 1]
        return self.step

    def premature_fields(self) -> List[str]:
        """Fields already populated although their step comes after the current one."""
        current = self.step_index
        return [
            name for name, owner in self.field_steps.items()
            if self.steps.index(owner) > current and _is_populated(getattr(self, name))
        ]

    def check_invariants(self):
        premature = self.premature_fields()
        if premature:
            raise FlowStateError(
                f"{self.kind.value} flow at {self.step.value} has later fields set: {premature}"
            )


def _is_populated(value) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, dict, str)):
        return len(value) > 0
    return True


@dataclass
class SendFlow(FlowState):
    kind: ClassVar[FlowKind] = FlowKind.SEND
    steps: ClassVar[Tuple[Enum, ...]] = tuple(SendStep)
    field_steps: ClassVar[Dict[str, Enum]] = {
        "currency": SendStep.CURRENCY,
        "amount": SendStep.AMOUNT,
        "destination": SendStep.DESTINATION,
    }

    currency: Optional[str] = None
    amount: Optional[str] = None
    destination: Optional[str] = None

    @property
    def is_email(self) -> bool:
        return bool(self.destination) and "@" in self.destination


@dataclass
class WithdrawFlow(FlowState):
    kind: ClassVar[FlowKind] = FlowKind.WITHDRAW
    steps: ClassVar[Tuple[Enum, ...]] = tuple(WithdrawStep)
    field_steps: ClassVar[Dict[str, Enum]] = {
        "currency": WithdrawStep.CURRENCY,
        "amount": WithdrawStep.AMOUNT,
        "wallet_address": WithdrawStep.WALLET,
    }

    currency: Optional[str] = None
    amount: Optional[str] = None
    wallet_address: Optional[str] = None


@dataclass
class OfframpFlow(FlowState):
    kind: ClassVar[FlowKind] = FlowKind.OFFRAMP
    steps: ClassVar[Tuple[Enum, ...]] = tuple(OfframpStep)
    # The quote is fetched as the amount step's action, then shown at QUOTE
    field_steps: ClassVar[Dict[str, Enum]] = {
        "currency": OfframpStep.CURRENCY,
        "amount": OfframpStep.AMOUNT,
        "quote": OfframpStep.AMOUNT,
        "wallet_id": OfframpStep.WALLET_ID,
        "customer_name": OfframpStep.CUSTOMER_NAME,
        "business_name": OfframpStep.BUSINESS_NAME,
        "email": OfframpStep.EMAIL,
        "country": OfframpStep.COUNTRY,
    }

    currency: Optional[str] = None
    amount: Optional[str] = None
    quote: Optional[Quote] = None
    wallet_id: Optional[str] = None
    customer_name: Optional[str] = None
    business_name: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None


@dataclass
class BatchFlow(FlowState):
    kind: ClassVar[FlowKind] = FlowKind.BATCH
    steps: ClassVar[Tuple[Enum, ...]] = tuple(BatchStep)
    field_steps: ClassVar[Dict[str, Enum]] = {
        "currency": BatchStep.BATCH_CURRENCY,
        "amount": BatchStep.BATCH_AMOUNT,
        "recipients": BatchStep.BATCH_RECIPIENTS,
    }

    currency: Optional[str] = None
    amount: Optional[str] = None
    recipients: List[BatchItem] = field(default_factory=list)

    def has_recipient(self, destination: str) -> bool:
        wanted = destination.lower()
        return any(item.destination.lower() == wanted for item in self.recipients)


FLOW_TYPES = {
    FlowKind.SEND: SendFlow,
    FlowKind.WITHDRAW: WithdrawFlow,
    FlowKind.OFFRAMP: OfframpFlow,
    FlowKind.BATCH: BatchFlow,
}


def new_flow(kind: FlowKind, user_id: int) -> FlowState:
    """Create a fresh flow of the given kind positioned at its first step."""
    return FLOW_TYPES[FlowKind(kind)](user_id=user_id)
