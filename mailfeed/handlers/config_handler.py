"""FastAPI handlers for account, rule and feed definitions."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, model_validator

from mailfeed.background.errors import ConfigError
from mailfeed.background.matcher import validate_rule_predicates
from mailfeed.database.repository import FeedRepository
from mailfeed.mail.types import ActionKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["definitions"])


# Pydantic models for API
class AccountCreate(BaseModel):
    name: str
    host: str
    port: int = 993
    username: str
    password: str
    use_tls: bool = True
    default_post_process_action: ActionKind = ActionKind.MARK_READ
    default_move_to_folder: Optional[str] = None
    poll_interval_minutes: Optional[int] = Field(default=None, gt=0)
    enabled: bool = True


class AccountResponse(BaseModel):
    id: str
    name: str
    host: str
    port: int
    username: str
    use_tls: bool
    default_post_process_action: str
    default_move_to_folder: Optional[str] = None
    poll_interval_minutes: Optional[int] = None
    watermark: Optional[str] = None
    enabled: bool


class RuleCreate(BaseModel):
    account_id: str
    name: str
    folder: str = "INBOX"
    to_address: Optional[str] = None
    from_address: Optional[str] = None
    subject_contains: Optional[str] = None
    label: Optional[str] = None
    is_active: bool = True
    post_process_action: Optional[ActionKind] = None
    move_to_folder: Optional[str] = None
    inherit_account_defaults: bool = True

    @model_validator(mode="after")
    def check_predicates(self):
        try:
            validate_rule_predicates(self.to_address, self.from_address, self.subject_contains, self.label)
        except ConfigError as e:
            raise ValueError(e.message)
        return self


class RuleResponse(BaseModel):
    id: str
    account_id: str
    name: str
    folder: str
    to_address: Optional[str] = None
    from_address: Optional[str] = None
    subject_contains: Optional[str] = None
    label: Optional[str] = None
    is_active: bool
    post_process_action: Optional[str] = None
    move_to_folder: Optional[str] = None
    inherit_account_defaults: bool


class FeedCreate(BaseModel):
    rule_id: str
    title: str
    description: Optional[str] = None
    feed_type: str = Field(default="rss", pattern="^(rss|atom)$")
    is_active: bool = True
    max_items: int = Field(default=100, ge=1)
    min_items: int = Field(default=10, ge=0)
    max_age_days: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def check_retention(self):
        if self.min_items > self.max_items:
            raise ValueError("min_items must not exceed max_items")
        return self


class FeedResponse(BaseModel):
    id: str
    rule_id: str
    title: str
    feed_type: str
    is_active: bool
    max_items: Optional[int] = None
    min_items: int
    max_age_days: Optional[int] = None
    item_count: int = 0


def get_repository(request: Request) -> FeedRepository:
    return request.app.state.repository


def _account_response(account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        host=account.host,
        port=account.port,
        username=account.username,
        use_tls=account.use_tls,
        default_post_process_action=account.default_post_process_action,
        default_move_to_folder=account.default_move_to_folder,
        poll_interval_minutes=account.poll_interval_minutes,
        watermark=account.watermark.isoformat() if account.watermark else None,
        enabled=account.enabled,
    )


# Account endpoints
@router.get("/accounts", response_model=List[AccountResponse])
async def list_accounts(repository: FeedRepository = Depends(get_repository)):
    return [_account_response(account) for account in repository.list_accounts(enabled_only=False)]


@router.post("/accounts", response_model=AccountResponse)
async def create_account(data: AccountCreate, repository: FeedRepository = Depends(get_repository)):
    """Create a mail account. The password is never echoed back."""
    try:
        account = repository.create_account(**data.model_dump(mode="json"))
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return _account_response(account)


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: str, repository: FeedRepository = Depends(get_repository)):
    """Delete an account with its rules, feeds and items."""
    account = repository.get_account(account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    repository.delete_account(account_id)
    return {"message": f"Account '{account.name}' deleted successfully"}


# Rule endpoints
@router.get("/rules", response_model=List[RuleResponse])
async def list_rules(account_id: Optional[str] = None, repository: FeedRepository = Depends(get_repository)):
    return [RuleResponse(**vars(rule)) for rule in repository.list_rules(account_id)]


@router.post("/rules", response_model=RuleResponse)
async def create_rule(data: RuleCreate, repository: FeedRepository = Depends(get_repository)):
    if repository.get_account(data.account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")
    try:
        rule = repository.create_rule(**data.model_dump(mode="json"))
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return RuleResponse(**vars(rule))


# Feed endpoints
@router.get("/feeds", response_model=List[FeedResponse])
async def list_feeds(repository: FeedRepository = Depends(get_repository)):
    return [_feed_response(feed, repository) for feed in repository.list_feeds()]


@router.post("/feeds", response_model=FeedResponse)
async def create_feed(data: FeedCreate, repository: FeedRepository = Depends(get_repository)):
    try:
        feed = repository.create_feed(**data.model_dump())
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return _feed_response(feed, repository)


def _feed_response(feed, repository: FeedRepository) -> FeedResponse:
    return FeedResponse(
        id=feed.id,
        rule_id=feed.rule_id,
        title=feed.title,
        feed_type=feed.feed_type,
        is_active=feed.is_active,
        max_items=feed.retention.max_items,
        min_items=feed.retention.min_items,
        max_age_days=feed.retention.max_age_days,
        item_count=repository.count_items(feed.id),
    )
