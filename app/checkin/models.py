#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Domain objects shared by the poller, the enrichment engine and the scheduler.
"""

import datetime
import enum
from dataclasses import dataclass
from typing import Optional, Union


class AccessState(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VisitEvent:
    """One check-in from the Virtuagym visit feed. Ordered by ``check_in_time``."""

    member_id: str
    check_in_time: Optional[datetime.datetime]
    access: AccessState = AccessState.ALLOWED


@dataclass(frozen=True)
class MemberProfile:
    member_id: str
    first_name: str = ""
    last_name: str = ""
    birth_date: Optional[datetime.date] = None
    # Virtuagym sends member_since either as epoch ms or as a date string
    registration_time: Union[datetime.datetime, str, int, None] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class ContractInstance:
    membership_name: str
    contract_end_time: Optional[datetime.datetime] = None
    active: bool = True


@dataclass(frozen=True)
class MemberStatus:
    """Derived per-check-in flags for one member."""

    display_name: str
    is_birthday: bool = False
    is_new_member: bool = False
    expiring_contract_end_time: Optional[datetime.datetime] = None

    @property
    def has_expiring_contract(self) -> bool:
        return self.expiring_contract_end_time is not None
