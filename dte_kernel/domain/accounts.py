"""
Account profiles -- who issues, and under which authorization.

An account is one issuing company.  Its profile carries what the batch
cover sheet and the upload form need: the company RUT, the RUT of the
person who transmits, and the Authority resolution that enabled the
company to issue electronic documents.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date

from dte_kernel.domain.values import normalize_rut
from dte_kernel.exceptions import UnknownAccountError


@dataclass(frozen=True, slots=True)
class AccountProfile:
    account_id: str
    rut: str
    legal_name: str
    resolution_number: int
    resolution_date: date
    sender_rut: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "rut", normalize_rut(self.rut))
        object.__setattr__(self, "sender_rut", normalize_rut(self.sender_rut))


class AccountDirectory(ABC):
    @abstractmethod
    def get(self, account_id: str) -> AccountProfile:
        """
        Raises:
            UnknownAccountError
        """
        ...


class InMemoryAccountDirectory(AccountDirectory):
    def __init__(self, profiles: list[AccountProfile] | None = None):
        self._profiles = {p.account_id: p for p in profiles or ()}

    def put(self, profile: AccountProfile) -> None:
        self._profiles[profile.account_id] = profile

    def get(self, account_id: str) -> AccountProfile:
        try:
            return self._profiles[account_id]
        except KeyError:
            raise UnknownAccountError(account_id) from None
