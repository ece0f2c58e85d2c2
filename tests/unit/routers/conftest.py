"""Router test fixtures with mocked Identity, payment gateway, receipt and notifier services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from task_settlement_service.app import create_app
from task_settlement_service.config import clear_settings_cache
from task_settlement_service.core.lifespan import lifespan
from task_settlement_service.core.state import get_app_state, reset_app_state
from tests.helpers import (
    POSTER_ID,
    TASKER_ID,
    config_yaml,
    make_identity_mock,
    make_notifier_mock,
    make_payment_gateway_mock,
    make_receipt_mock,
    token_for,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from httpx import Response


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_yaml(str(tmp_path / "test.db"), str(tmp_path / "logs")))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        # AppState pushes replaced clients into every component holding them
        state = get_app_state()
        state.identity_client = make_identity_mock()
        state.payment_gateway_client = make_payment_gateway_mock()
        state.receipt_client = make_receipt_mock()
        state.notifier_client = make_notifier_mock()

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def auth(user_id: str) -> dict[str, str]:
    """Authorization header the mocked Identity provider resolves to `user_id`."""
    return {"Authorization": f"Bearer {token_for(user_id)}"}


async def create_task(
    client: AsyncClient,
    poster_id: str = POSTER_ID,
    **overrides: Any,
) -> Response:
    """Create a task via POST /tasks and return the response."""
    payload: dict[str, Any] = {
        "title": "Assemble a bookshelf",
        "description": "Flat-pack bookshelf, tools provided",
        "budget": 200,
        "currency": "USD",
        "categories": ["Handyman, Furniture"],
    }
    payload.update(overrides)
    return await client.post("/tasks", json=payload, headers=auth(poster_id))


async def make_offer(
    client: AsyncClient,
    task_id: str,
    tasker_id: str = TASKER_ID,
    *,
    amount: Any = 150,
) -> Response:
    """Make an offer via POST /tasks/{task_id}/offers."""
    return await client.post(
        f"/tasks/{task_id}/offers",
        json={"amount": amount, "message": "I can do it"},
        headers=auth(tasker_id),
    )


async def setup_task_in_todo(client: AsyncClient) -> tuple[str, str]:
    """Create a task and accept one offer. Returns (task_id, offer_id)."""
    task_id = (await create_task(client)).json()["task_id"]
    offer_id = (await make_offer(client, task_id)).json()["offer_id"]
    await client.post(
        f"/tasks/{task_id}/offers/{offer_id}/accept", json={}, headers=auth(POSTER_ID)
    )
    return task_id, offer_id


async def setup_task_in_done(client: AsyncClient) -> tuple[str, str]:
    """Create a task, accept an offer, pay, and mark it done. Returns (task_id, offer_id)."""
    task_id, offer_id = await setup_task_in_todo(client)
    await client.post(f"/tasks/{task_id}/payment-intent", headers=auth(POSTER_ID))
    await client.post(f"/tasks/{task_id}/done", json={}, headers=auth(TASKER_ID))
    return task_id, offer_id
