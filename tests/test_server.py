"""Control API tests (httpx.ASGITransport, lifespan not run)."""
import asyncio

import httpx
import pytest

from convoloop.app.controls import ControlGate
from convoloop.server import create_app
from convoloop.voice.turn_state import TurnState

from conftest import Rig, wait_until


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://convoloop.test")


class TestControlApi:

    @pytest.mark.asyncio
    async def test_healthz_and_turn_view(self):
        async with Rig() as rig:
            app = create_app(rig.machine)
            async with _client(app) as client:
                health = (await client.get("/healthz")).json()
                assert health["ok"] is True
                assert health["state"] == "IDLE"
                assert health["running"] is True

                body = (await client.get("/v1/turn", headers={"X-Correlation-ID": "req_abc"})).json()
                assert body["ok"] is True
                assert body["operation"] == "turn_get"
                assert body["correlation_id"] == "req_abc"
                assert body["data"]["turn"]["state"] == "IDLE"
                assert body["data"]["control"]["action"] == "start"
                assert body["data"]["session"] == {"from_id": "user-1", "to_id": "agent-1"}

    @pytest.mark.asyncio
    async def test_start_stop_interrupt_routes(self):
        async with Rig() as rig:
            app = create_app(rig.machine)
            async with _client(app) as client:
                resp = await client.post("/v1/turn/start")
                assert resp.status_code == 200
                await rig.wait_recording()
                assert rig.machine.state == TurnState.LISTENING

                resp = await client.post("/v1/turn/stop")
                assert resp.json()["operation"] == "turn_stop"
                await wait_until(lambda: len(rig.machine.transitions) >= 3)
                await rig.wait_recording()

                resp = await client.post("/v1/turn/interrupt")
                assert resp.status_code == 200
                await rig.machine.settle()
                assert rig.machine.state == TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_toggle_conflicts(self):
        async with Rig() as rig:
            rig.dialogue.hold = asyncio.Event()
            app = create_app(rig.machine, ControlGate(rig.machine, debounce_secs=60.0))
            async with _client(app) as client:
                resp = await client.post("/v1/turn/toggle")
                assert resp.status_code == 200
                assert resp.json()["data"]["action"] == "start"
                await rig.wait_recording()

                resp = await client.post("/v1/turn/toggle")
                assert resp.status_code == 409
                assert resp.json()["error"]["code"] == "DEBOUNCED"

        async with Rig() as rig:
            rig.dialogue.hold = asyncio.Event()
            app = create_app(rig.machine, ControlGate(rig.machine, debounce_secs=0.0))
            async with _client(app) as client:
                await rig.start_listening()
                await rig.speak_turn(ms=500)
                await wait_until(lambda: rig.dialogue.calls)

                resp = await client.post("/v1/turn/toggle")
                body = resp.json()
                assert resp.status_code == 409
                assert body["ok"] is False
                assert body["error"]["code"] == "CONTROL_DISABLED"
                assert body["error"]["details"]["state"] == "PROCESSING"
                rig.dialogue.hold.set()
