from __future__ import annotations

import json
from pathlib import Path

import pytest

from main import TransportError, UniFiClient


class FakeController:
    """Stands in for UniFiController; records firewall group updates."""

    def __init__(self, clients: list[UniFiClient] | None = None) -> None:
        self.clients = clients or []
        self.updates: list[tuple[str, set[str]]] = []
        self.fail_fetch = False
        self.fail_update = False

    def get_clients(self) -> list[UniFiClient]:
        if self.fail_fetch:
            raise TransportError("GET stat/sta failed (HTTP 502): bad gateway")
        return self.clients

    def set_firewall_group_members(self, group_id: str, members: set[str]) -> None:
        if self.fail_update:
            raise TransportError(f"PUT firewallgroup/{group_id} failed (HTTP 500): boom")
        self.updates.append((group_id, set(members)))


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
def write_config(tmp_path: Path):
    def _write(clients: list[dict]) -> Path:
        path = tmp_path / "clients.json"
        path.write_text(json.dumps({"clients": clients}), encoding="utf-8")
        return path

    return _write
