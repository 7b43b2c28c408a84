"""Tests for FastAPI REST API endpoints."""

import asyncio
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import FakeCluster, StaticResolver
from glbc import api as api_module
from glbc.api import app, get_manager, initialize_manager
from glbc.dns import FakeDNSProvider
from glbc.manager import ControllerManager
from glbc.models import CertificateState, ClusterConfig, ControllerConfig, DNSRecord
from glbc.tls import FakeTLSProvider


class TestAPI:
    """Tests for FastAPI endpoints."""

    @pytest.fixture
    def client(self):
        """Create a test client."""
        return TestClient(app)

    @pytest.fixture
    def controller_config(self):
        return ControllerConfig(
            domain="example.com",
            root_cluster=ClusterConfig(name="kcp", kubeconfig_path="/home/me/.kube/kcp"),
        )

    @pytest.fixture
    def manager(self, controller_config, monkeypatch):
        """Install a manager backed by in-memory components."""
        mgr = ControllerManager(
            controller_config,
            root_cluster=FakeCluster(),
            dns_provider=FakeDNSProvider(),
            tls_provider=FakeTLSProvider(issue_immediately=False),
            resolver=StaticResolver(),
        )
        monkeypatch.setattr(api_module, "manager", mgr)
        return mgr

    @pytest.fixture
    def records(self, manager):
        provider = manager.dns_provider
        provider.records = {
            "abc.example.com": DNSRecord(name="echo", namespace="default",
                                         dns_name="abc.example.com", targets=("10.0.0.1",)),
            "def.example.com": DNSRecord(name="web", namespace="shop",
                                         dns_name="def.example.com", targets=("10.0.0.2", "10.0.0.3")),
        }
        return provider.records

    def test_health_check(self, client):
        """Test health check endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "glbc"}

    def test_not_initialized(self, client, monkeypatch):
        monkeypatch.setattr(api_module, "manager", None)

        response = client.get("/records")

        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]

    def test_initialize_manager(self, controller_config, monkeypatch):
        """Test manager initialization."""
        monkeypatch.setattr(api_module, "manager", None)

        initialize_manager(controller_config, root_cluster=FakeCluster())

        mgr = asyncio.run(get_manager())
        assert isinstance(mgr, ControllerManager)
        assert mgr.config == controller_config

    def test_ready_before_running(self, client, manager):
        response = client.get("/ready")
        assert response.status_code == 503

    def test_ready_when_running(self, client, manager):
        manager.running = True

        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "mode": "root"}

    def test_get_records(self, client, records):
        response = client.get("/records")

        assert response.status_code == 200
        data = response.json()
        assert [r["dns_name"] for r in data] == ["abc.example.com", "def.example.com"]
        assert data[1]["targets"] == ["10.0.0.2", "10.0.0.3"]
        assert data[0]["record_ttl"] == 60

    def test_get_records_by_namespace(self, client, records):
        response = client.get("/records?namespace=shop")

        assert response.status_code == 200
        assert [r["name"] for r in response.json()] == ["web"]

    def test_get_record(self, client, records):
        response = client.get("/records/abc.example.com")

        assert response.status_code == 200
        assert response.json()["targets"] == ["10.0.0.1"]

    def test_get_record_not_found(self, client, records):
        response = client.get("/records/missing.example.com")

        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_get_certificates(self, client, manager):
        async def request():
            await manager.certificates.initialize()
            await manager.certificates.ensure_certificate("abc.example.com")
        asyncio.run(request())

        response = client.get("/certificates")
        assert response.status_code == 200
        data = response.json()
        assert data[0]["hostname"] == "abc.example.com"
        assert data[0]["state"] == "requested"

        response = client.get("/certificates", params={"state": CertificateState.ISSUED.value})
        assert response.json() == []

    def test_get_controllers(self, client, manager):
        response = client.get("/controllers")

        assert response.status_code == 200
        assert [c["name"] for c in response.json()] == ["ingress", "dnsrecord"]

    def test_get_config_sanitized(self, client, manager):
        response = client.get("/config")

        assert response.status_code == 200
        data = response.json()
        assert data["domain"] == "example.com"
        assert data["root_cluster"]["kubeconfig_path"] == "***"

    def test_lifecycle_starts_and_stops_manager(self, manager):
        """Startup runs the controllers; shutdown stops them."""
        manager.ingress_store.synced.set()
        manager.dns_record_store.synced.set()

        with patch.object(manager, "_build_informers", return_value=[]):
            with TestClient(app) as client:
                deadline = time.monotonic() + 2
                while client.get("/ready").status_code != 200:
                    assert time.monotonic() < deadline
                    time.sleep(0.01)
                assert manager.certificates.ready

        assert not manager.running
