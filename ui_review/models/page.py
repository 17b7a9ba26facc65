"""Pydantic models for review targets: pages, viewports, interactions and auth."""

from __future__ import annotations

import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

PAGE_NAME_RE = re.compile(r"^[A-Za-z0-9_ -]+$")

ActionType = Literal[
    "click", "fill", "hover", "wait_for", "select", "press", "pause", "wait_for_idle"
]


class ViewportSpec(BaseModel):
    """A named browser viewport."""

    name: str
    width: int
    height: int


class Action(BaseModel):
    """One declarative interaction step run before the screenshot."""

    type: ActionType
    selector: str = ""
    value: str = ""
    key: str = ""
    ms: int = 0  # pause duration
    timeout_ms: Optional[int] = None


class TokenAuthSpec(BaseModel):
    """How to fetch a short-lived token that must be appended to the page URL."""

    endpoint: str
    method: str = "POST"
    body: Optional[dict[str, Any]] = None
    token_path: str = "token"  # dot-separated path into the JSON response
    query_param: str = "token"

    @field_validator("endpoint")
    @classmethod
    def _relative_endpoint(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError(f"endpoint must start with / and not //: {value}")
        return value

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()


class PageSpec(BaseModel):
    """A page of the target site to review."""

    name: str
    path: str
    token_auth: Optional[TokenAuthSpec] = None
    actions: list[Action] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not PAGE_NAME_RE.match(value):
            raise ValueError(
                f'Invalid page name "{value}": use only alphanumeric, spaces, hyphens, underscores'
            )
        return value

    @field_validator("path")
    @classmethod
    def _valid_path(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError(f'Invalid page path "{value}": must start with / and not //')
        return value


class LoginSpec(BaseModel):
    """Form login performed once to produce the browser auth state."""

    login_path: str = "/login"
    username: str
    password: str = Field(repr=False)
    username_selector: str = 'input[type="email"], input[name="username"], input[name="email"]'
    password_selector: str = 'input[type="password"]'
    submit_selector: str = 'button[type="submit"], input[type="submit"]'
