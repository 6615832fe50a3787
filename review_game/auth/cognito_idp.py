from __future__ import annotations

from functools import lru_cache
from typing import Any

import boto3

from ..settings import settings


@lru_cache(maxsize=1)
def client():
    return boto3.client("cognito-idp", region_name=settings.cognito_region or settings.aws_region)


def user_pool_id() -> str:
    pool = str(settings.cognito_user_pool_id or "").strip()
    if not pool:
        raise RuntimeError("COGNITO_USER_POOL_ID is not set")
    return pool


def admin_get_user(*, username: str) -> dict[str, Any]:
    return client().admin_get_user(UserPoolId=user_pool_id(), Username=username)


def admin_update_user_attributes(*, username: str, attributes: dict[str, str]) -> None:
    client().admin_update_user_attributes(
        UserPoolId=user_pool_id(),
        Username=username,
        UserAttributes=[{"Name": k, "Value": v} for k, v in attributes.items()],
    )


def user_attribute(user: dict[str, Any], name: str) -> str | None:
    for attr in user.get("UserAttributes") or []:
        if attr.get("Name") == name:
            return attr.get("Value")
    return None


def is_email_verified(username: str) -> bool:
    return str(user_attribute(admin_get_user(username=username), "email_verified") or "").lower() == "true"


def mark_email_verified(username: str) -> None:
    admin_update_user_attributes(username=username, attributes={"email_verified": "true"})
