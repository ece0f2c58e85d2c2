"""Offer endpoint tests."""

from __future__ import annotations

import pytest

from tests.helpers import OTHER_TASKER_ID, POSTER_ID, TASKER_ID
from tests.unit.routers.conftest import auth, create_task, make_offer


@pytest.mark.unit
async def test_make_offer_returns_201(client):
    task_id = (await create_task(client)).json()["task_id"]

    response = await make_offer(client, task_id, amount="149.99")

    assert response.status_code == 201
    data = response.json()
    assert data["offer_id"].startswith("off-")
    assert data["task_id"] == task_id
    assert data["tasker_id"] == TASKER_ID
    assert data["amount"] == 149.99
    assert data["status"] == "pending"


@pytest.mark.unit
async def test_duplicate_pending_offer_conflicts(client):
    task_id = (await create_task(client)).json()["task_id"]
    await make_offer(client, task_id)

    response = await make_offer(client, task_id)

    assert response.status_code == 409
    assert response.json()["error"] == "OFFER_ALREADY_EXISTS"


@pytest.mark.unit
async def test_poster_cannot_offer(client):
    task_id = (await create_task(client)).json()["task_id"]

    response = await make_offer(client, task_id, tasker_id=POSTER_ID)

    assert response.status_code == 400
    assert response.json()["error"] == "SELF_OFFER"


@pytest.mark.unit
async def test_invalid_offer_amount(client):
    task_id = (await create_task(client)).json()["task_id"]

    response = await make_offer(client, task_id, amount=0)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_AMOUNT"


@pytest.mark.unit
async def test_offer_on_missing_task(client):
    response = await make_offer(client, "t-missing")

    assert response.status_code == 404
    assert response.json()["error"] == "TASK_NOT_FOUND"


@pytest.mark.unit
async def test_only_one_acceptance_wins(client):
    """Accepting a second offer after the first fails with TASK_NOT_OPEN."""
    task_id = (await create_task(client)).json()["task_id"]
    first = (await make_offer(client, task_id)).json()["offer_id"]
    second = (await make_offer(client, task_id, tasker_id=OTHER_TASKER_ID)).json()["offer_id"]

    won = await client.post(
        f"/tasks/{task_id}/offers/{first}/accept", json={}, headers=auth(POSTER_ID)
    )
    lost = await client.post(
        f"/tasks/{task_id}/offers/{second}/accept", json={}, headers=auth(POSTER_ID)
    )

    assert won.status_code == 200
    assert lost.status_code == 409
    assert lost.json()["error"] == "TASK_NOT_OPEN"

    offers = (await client.get(f"/tasks/{task_id}/offers")).json()["offers"]
    assert {o["offer_id"]: o["status"] for o in offers} == {
        first: "accepted",
        second: "rejected",
    }


@pytest.mark.unit
async def test_accept_without_body(client):
    """The accept body is optional."""
    task_id = (await create_task(client)).json()["task_id"]
    offer_id = (await make_offer(client, task_id)).json()["offer_id"]

    response = await client.post(
        f"/tasks/{task_id}/offers/{offer_id}/accept",
        content=b"",
        headers={**auth(POSTER_ID), "Content-Type": "application/json"},
    )

    assert response.status_code == 200


@pytest.mark.unit
async def test_tasker_cannot_accept(client):
    task_id = (await create_task(client)).json()["task_id"]
    offer_id = (await make_offer(client, task_id)).json()["offer_id"]

    response = await client.post(
        f"/tasks/{task_id}/offers/{offer_id}/accept", json={}, headers=auth(TASKER_ID)
    )

    assert response.status_code == 403
    assert response.json()["error"] == "FORBIDDEN_ACTOR"


@pytest.mark.unit
async def test_reject_and_withdraw(client):
    task_id = (await create_task(client)).json()["task_id"]
    rejected_id = (await make_offer(client, task_id)).json()["offer_id"]
    withdrawn_id = (await make_offer(client, task_id, tasker_id=OTHER_TASKER_ID)).json()[
        "offer_id"
    ]

    rejected = await client.post(
        f"/tasks/{task_id}/offers/{rejected_id}/reject", headers=auth(POSTER_ID)
    )
    withdrawn = await client.post(
        f"/tasks/{task_id}/offers/{withdrawn_id}/withdraw", headers=auth(OTHER_TASKER_ID)
    )

    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"
    assert withdrawn.status_code == 200
    assert withdrawn.json()["status"] == "withdrawn"

    offers = (await client.get(f"/tasks/{task_id}/offers")).json()["offers"]
    assert [o["offer_id"] for o in offers] == [rejected_id]


@pytest.mark.unit
async def test_list_my_offers(client):
    first_task = (await create_task(client)).json()["task_id"]
    second_task = (await create_task(client)).json()["task_id"]
    await make_offer(client, first_task)
    await make_offer(client, second_task)
    await make_offer(client, second_task, tasker_id=OTHER_TASKER_ID)

    response = await client.get("/offers/mine", headers=auth(TASKER_ID))
    filtered = await client.get(
        "/offers/mine", params={"status": "accepted"}, headers=auth(TASKER_ID)
    )

    assert response.status_code == 200
    assert {o["task_id"] for o in response.json()["offers"]} == {first_task, second_task}
    assert filtered.json()["offers"] == []


@pytest.mark.unit
async def test_offer_routes_reject_wrong_methods(client):
    response = await client.get("/tasks/t-1/offers/off-1/accept")

    assert response.status_code == 405
    assert response.json()["error"] == "METHOD_NOT_ALLOWED"
