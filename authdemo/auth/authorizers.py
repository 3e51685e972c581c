"""Authorizers: named checks run on the profiles of a secured request."""

from typing import List

from fastapi import Request

from authdemo.models import UserProfile


class Authorizer:
    def is_authorized(self, request: Request, profiles: List[UserProfile]) -> bool:
        raise NotImplementedError


class ProfileAuthorizer(Authorizer):
    """Authorized when at least one profile passes ``is_profile_authorized``."""

    def is_authorized(self, request: Request, profiles: List[UserProfile]) -> bool:
        return any(self.is_profile_authorized(request, profile) for profile in profiles)

    def is_profile_authorized(self, request: Request, profile: UserProfile) -> bool:
        raise NotImplementedError


class RequireAnyRoleAuthorizer(ProfileAuthorizer):
    def __init__(self, *roles: str):
        self.roles = set(roles)

    def is_profile_authorized(self, request: Request, profile: UserProfile) -> bool:
        return bool(self.roles.intersection(profile.roles))


class CustomAuthorizer(ProfileAuthorizer):
    """Demo rule: the username must start with "jle"."""

    def is_profile_authorized(self, request: Request, profile: UserProfile) -> bool:
        if profile is None:
            return False
        return (profile.username or "").startswith("jle")
