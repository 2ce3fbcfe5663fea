from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable


class EligibilityTag(str, enum.Enum):
    NONE = "NONE"
    ALL_USERS = "ALL_USERS"
    NEW_USER = "NEW_USER"
    FIRST_ORDER = "FIRST_ORDER"
    REFERRAL = "REFERRAL"
    SPECIFIC_USER_GROUP = "SPECIFIC_USER_GROUP"


@dataclass(frozen=True)
class UserProfile:
    """Snapshot of the caller's knowledge about the user at checkout time."""

    flags: frozenset[EligibilityTag] = field(default_factory=frozenset)
    prior_order_count: int | None = None
    user_groups: frozenset[str] = field(default_factory=frozenset)


Predicate = Callable[[UserProfile, frozenset[str]], bool]


def _always(_profile: UserProfile, _groups: frozenset[str]) -> bool:
    return True


def _new_user(profile: UserProfile, _groups: frozenset[str]) -> bool:
    if EligibilityTag.NEW_USER not in profile.flags:
        return False
    return profile.prior_order_count is None or profile.prior_order_count == 0


def _first_order(profile: UserProfile, _groups: frozenset[str]) -> bool:
    if profile.prior_order_count is not None:
        return profile.prior_order_count == 0
    return EligibilityTag.FIRST_ORDER in profile.flags


def _referral(profile: UserProfile, _groups: frozenset[str]) -> bool:
    return EligibilityTag.REFERRAL in profile.flags


def _specific_user_group(profile: UserProfile, target_groups: frozenset[str]) -> bool:
    if not target_groups:
        return EligibilityTag.SPECIFIC_USER_GROUP in profile.flags
    return bool(profile.user_groups & target_groups)


PREDICATES: dict[EligibilityTag, Predicate] = {
    EligibilityTag.NONE: _always,
    EligibilityTag.ALL_USERS: _always,
    EligibilityTag.NEW_USER: _new_user,
    EligibilityTag.FIRST_ORDER: _first_order,
    EligibilityTag.REFERRAL: _referral,
    EligibilityTag.SPECIFIC_USER_GROUP: _specific_user_group,
}


def parse_tags(values: Iterable[str] | None) -> list[EligibilityTag]:
    """Raises ValueError on tags outside the closed set."""
    tags: list[EligibilityTag] = []
    for value in values or []:
        tag = EligibilityTag(str(value).strip().upper())
        if tag not in tags:
            tags.append(tag)
    return tags or [EligibilityTag.NONE]


def is_user_eligible(
    tags: Iterable[str],
    profile: UserProfile,
    target_user_groups: Iterable[str] | None = None,
) -> bool:
    groups = frozenset(target_user_groups or ())
    return all(PREDICATES[EligibilityTag(tag)](profile, groups) for tag in tags)


def build_profile(
    flags: Iterable[str] | None = None,
    prior_order_count: int | None = None,
    user_groups: Iterable[str] | None = None,
) -> UserProfile:
    return UserProfile(
        flags=frozenset(parse_tags(flags)) if flags else frozenset(),
        prior_order_count=prior_order_count,
        user_groups=frozenset(user_groups or ()),
    )
