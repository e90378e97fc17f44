"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentModel, PaymentIncidentModel
from .balance import UserBalanceModel, BalanceTransactionModel, BalanceReservationModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "PaymentIncidentModel",
    "UserBalanceModel",
    "BalanceTransactionModel",
    "BalanceReservationModel",
]
