"""
HTTP API Tests
==============

Drives the FastAPI app through TestClient. Background tasks run before
TestClient returns, so anchoring results are visible right after the call.
"""

import os
import shutil
import tempfile

from fastapi.testclient import TestClient

from backend.api import create_app
from did_wallet.auth import ensure_profile, issue_api_token
from did_wallet.config import Settings
from did_wallet.db import session_scope


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.payload = payload
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON body")
        return self.payload


class FakeHttp:
    """Answers every POST with ``self.response``"""

    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append(url)
        return self.response


class ApiTestBase:
    anchoring_ledger = "simulated"
    identity_provider_key = ""

    def setup_method(self):
        self.tmpdir = tempfile.mkdtemp()
        self.settings = Settings(
            database_url=f"sqlite:///{os.path.join(self.tmpdir, 'api.db')}",
            server_secret="test-server-secret",
            anchoring_ledger=self.anchoring_ledger,
            ion_node_url="https://ion.example",
            anchor_max_attempts=1,
            anchor_backoff_seconds=0.0,
            kdf_iterations=1_000,
            admin_emails=["root@example.org"],
            identity_provider_key=self.identity_provider_key,
        )
        self.http = FakeHttp(FakeResponse(503, text="node offline"))
        self.app = create_app(self.settings, ion_http=self.http)
        self.services = self.app.state.services
        self.client = TestClient(self.app)
        self.client.__enter__()

    def teardown_method(self):
        self.client.__exit__(None, None, None)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def login(self, user_id, email, full_name=None):
        with session_scope(self.services.Session) as session:
            profile = ensure_profile(session, user_id, email, full_name, admin_emails=self.settings.admin_emails)
            token = issue_api_token(session, profile)
        return {"Authorization": f"Bearer {token}"}


class TestSignIn(ApiTestBase):
    """Sign-in through the identity provider"""

    identity_provider_key = "idp-shared-key"

    def sign_in(self, key="idp-shared-key", **body):
        payload = {"userId": "user-1", "email": "alice@example.org", "fullName": "Alice"}
        payload.update(body)
        return self.client.post("/api/auth/session", json=payload, headers={"X-Identity-Provider-Key": key})

    def test_sign_in_then_me(self):
        response = self.sign_in()

        assert response.status_code == 200
        body = response.json()
        assert body["profile"]["role"] == "holder"
        me = self.client.get("/api/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.json() == {"id": "user-1", "email": "alice@example.org", "role": "holder"}
        print("✅ Signed in as user-1")

    def test_admin_sign_in(self):
        body = self.sign_in(userId="admin-1", email="root@example.org").json()
        headers = {"Authorization": f"Bearer {body['token']}"}
        assert self.client.get("/api/admin/profiles", headers=headers).status_code == 200

    def test_wrong_provider_key(self):
        response = self.sign_in(key="guess")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_invalid_sign_in(self):
        assert self.sign_in(email="not-an-email").status_code == 400
        self.sign_in()
        taken = self.sign_in(userId="user-2")
        assert taken.status_code == 400
        assert taken.json()["code"] == "CONFLICT"


class TestDIDEndpoints(ApiTestBase):
    """Test DID issuance over HTTP"""

    def setup_method(self):
        super().setup_method()
        self.alice = self.login("user-1", "alice@example.org")

    def test_generate_did(self):
        """Answer is pending; the background job anchors the DID"""
        response = self.client.post(
            "/functions/generate-did",
            json={"includeService": True, "serviceEndpoint": "https://alice.example"},
            headers=self.alice,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["status"] == "pending"
        assert data["ipfsHash"] == "pending"
        assert data["didDocument"]["service"][0]["serviceEndpoint"] == "https://alice.example"

        own = self.client.get("/api/dids/me", headers=self.alice).json()["did"]
        assert own["status"] == "anchored"

        details = self.client.get(f"/api/dids/{data['didId']}", headers=self.alice).json()
        assert len(details["ipfs_pins"]) == 1
        assert len(details["ion_operations"]) == 1
        assert details["ion_operations"][0]["transaction_id"].startswith("btc_tx_")
        print(f"✅ {data['did']} anchored")

    def test_second_generate_conflicts(self):
        self.client.post("/functions/generate-did", json={}, headers=self.alice)

        response = self.client.post("/functions/generate-did", json={}, headers=self.alice)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "User already has a DID", "code": "CONFLICT"}
        assert self.client.get("/api/network/statistics").json()["total"] == 1

    def test_unauthorized(self):
        response = self.client.post("/functions/generate-did", json={})
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

        response = self.client.get("/api/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_me(self):
        assert self.client.get("/api/me", headers=self.alice).json() == {
            "id": "user-1", "email": "alice@example.org", "role": "holder",
        }

    def test_resolve_search_and_statistics(self):
        did = self.client.post("/functions/generate-did", json={}, headers=self.alice).json()["data"]

        resolved = self.client.get(f"/api/resolve/{did['did']}")
        assert resolved.status_code == 200
        assert resolved.json()["didDocument"]["id"] == did["did"]
        assert resolved.json()["didDocumentMetadata"]["status"] == "anchored"
        assert self.client.get("/api/resolve/did:ion:missing").status_code == 404

        results = self.client.get("/api/dids/search", params={"q": did["did"][8:20]}, headers=self.alice).json()
        assert [r["did_identifier"] for r in results["results"]] == [did["did"]]
        wildcard = self.client.get("/api/dids/search", params={"q": "%"}, headers=self.alice).json()
        assert wildcard == {"results": []}

        stats = self.client.get("/api/statistics", headers=self.alice).json()
        assert stats == {"totalDIDs": 1, "verifiedDIDs": 1, "ipfsPins": 1, "pendingOperations": 0}
        assert self.client.get("/api/network/statistics").json() == {"total": 1, "anchored": 1, "pending": 0}

    def test_reverify(self):
        did = self.client.post("/functions/generate-did", json={}, headers=self.alice).json()["data"]

        response = self.client.post(f"/api/dids/{did['didId']}/verify", headers=self.alice)
        assert response.status_code == 200
        assert response.json()["status"] == "verified"

        bob = self.login("user-2", "bob@example.org")
        assert self.client.post(f"/api/dids/{did['didId']}/verify", headers=bob).status_code == 403

    def test_info(self):
        info = self.client.get("/api/info").json()
        assert info["available"] is True
        assert info["method"] == "ion"
        assert info["anchoring"] == "simulated"


class TestIonEndpoints(ApiTestBase):
    """Anchoring through an ION node that is down during the background job"""

    anchoring_ledger = "ion"

    def setup_method(self):
        super().setup_method()
        self.alice = self.login("user-1", "alice@example.org")
        self.did = self.client.post("/functions/generate-did", json={}, headers=self.alice).json()["data"]
        details = self.client.get(f"/api/dids/{self.did['didId']}", headers=self.alice).json()
        self.operation_id = details["ion_operations"][0]["id"]

    def test_failed_job_leaves_pending_operation(self):
        own = self.client.get("/api/dids/me", headers=self.alice).json()["did"]
        assert own["status"] == "failed"
        assert self.http.calls == ["https://ion.example/operations"]

    def test_submit_operation(self):
        self.http.response = FakeResponse(200, {"transactionId": "tx-9", "blockHeight": 850000})

        response = self.client.post(
            "/functions/submit-ion-operation", json={"operationId": self.operation_id}, headers=self.alice
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"transactionId": "tx-9", "blockHeight": 850000}}
        assert self.client.get("/api/dids/me", headers=self.alice).json()["did"]["status"] == "anchored"

        again = self.client.post(
            "/functions/submit-ion-operation", json={"operationId": self.operation_id}, headers=self.alice
        )
        assert again.status_code == 500
        assert again.json() == {"success": False, "error": "Operation already anchored"}

    def test_submit_unexpected_answer(self):
        self.http.response = FakeResponse(200, ["queued"])

        response = self.client.post(
            "/functions/submit-ion-operation", json={"operationId": self.operation_id}, headers=self.alice
        )

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "ION submission failed: unexpected response"}

    def test_submit_errors(self):
        missing = self.client.post("/functions/submit-ion-operation", json={}, headers=self.alice)
        assert missing.status_code == 500
        assert missing.json()["error"] == "Operation ID is required"

        offline = self.client.post(
            "/functions/submit-ion-operation", json={"operationId": self.operation_id}, headers=self.alice
        )
        assert offline.status_code == 500
        assert offline.json()["success"] is False
        assert "node offline" in offline.json()["error"]

    def test_replace_failed_did(self):
        assert self.client.delete("/api/dids/me", headers=self.alice).json() == {"success": True}
        assert self.client.get("/api/dids/me", headers=self.alice).json() == {"did": None}


class TestCredentialFlow(ApiTestBase):
    """Issuer application, issuance, sharing and verification"""

    def setup_method(self):
        super().setup_method()
        self.admin = self.login("admin-1", "root@example.org")
        self.issuer = self.login("issuer-1", "registrar@example.edu")
        self.holder = self.login("holder-1", "alice@example.org")

    def approve_issuer(self):
        application = self.client.post("/api/issuer-applications", json={
            "full_name": "Example University",
            "email": "registrar@example.edu",
            "website_url": "https://example.edu",
        }, headers=self.issuer).json()
        return self.client.post(
            f"/api/admin/applications/{application['id']}/review",
            json={"action": "approve"},
            headers=self.admin,
        )

    def issue_credential(self, name="Alice"):
        return self.client.post("/api/credentials", json={
            "recipientEmail": "alice@example.org",
            "credentialSubject": {"name": name, "degree": "BSc"},
        }, headers=self.issuer)

    def test_admin_approval(self):
        assert self.client.get("/api/admin/applications", headers=self.holder).status_code == 403

        response = self.approve_issuer()

        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert self.client.get("/api/me", headers=self.issuer).json()["role"] == "issuer"
        own = self.client.get("/api/issuer-applications", headers=self.issuer).json()["application"]
        assert own["status"] == "approved"

    def test_holder_cannot_issue(self):
        response = self.issue_credential()
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_share_and_verify(self):
        self.approve_issuer()
        assert self.issue_credential().status_code == 200
        assert self.issue_credential("Alice A.").status_code == 200

        no_did = self.client.post("/api/presentations", json={"selection": [0]}, headers=self.holder)
        assert no_did.status_code == 400

        holder_did = self.client.post("/functions/generate-did", json={}, headers=self.holder).json()["data"]["did"]

        empty = self.client.post("/api/presentations", json={"selection": []}, headers=self.holder)
        assert empty.status_code == 400
        assert empty.json()["code"] == "EMPTY_SELECTION"
        assert empty.json()["error"] == "Please select at least one credential to share"

        shared = self.client.post("/api/presentations", json={"selection": [0, 1]}, headers=self.holder).json()
        assert shared["qrCode"].startswith("data:image/png;base64,")
        assert shared["presentation"]["holder"] == holder_did

        verified = self.client.post("/api/presentations/verify", json={"presentation": shared["presentation"]}).json()
        assert verified["holder"] == holder_did
        assert verified["validVP"] is True
        assert [c["issuer"] for c in verified["credentials"]] == ["Example University"] * 2
        assert [c["credentialSubject"]["name"] for c in verified["credentials"]] == ["Alice", "Alice A."]
        assert all(c["verified"] for c in verified["credentials"])

    def test_verify_plain_text(self):
        response = self.client.post("/api/presentations/verify", json={"presentation": "did:ion:abc"})
        assert response.json()["holder"] == "did:ion:abc"
        assert response.json()["credentials"] == []

    def test_revoke_hides_from_presentations(self):
        self.approve_issuer()
        credential = self.issue_credential().json()

        response = self.client.post(
            f"/api/credentials/{credential['credential_id']}/revoke",
            json={"reason": "Issued in error"},
            headers=self.issuer,
        )

        assert response.json()["status"] == "revoked"
        assert self.client.get("/api/credentials", headers=self.holder).json() == {"credentials": []}
        held = self.client.get("/api/credentials", params={"include_revoked": True}, headers=self.holder).json()
        assert len(held["credentials"]) == 1
        issued = self.client.get("/api/credentials/issued", headers=self.issuer).json()["credentials"]
        assert [c["status"] for c in issued] == ["revoked"]

    def test_admin_tools(self):
        profiles = self.client.get("/api/admin/profiles", headers=self.admin).json()["profiles"]
        assert {p["email"] for p in profiles} == {"root@example.org", "registrar@example.edu", "alice@example.org"}

        updated = self.client.put("/api/admin/profiles/holder-1/role", json={"role": "issuer"}, headers=self.admin)
        assert updated.json()["role"] == "issuer"

        assert self.client.post("/api/admin/credentials/expire", headers=self.admin).json() == {"expired": 0}
        assert self.client.post("/api/admin/credentials/expire", headers=self.holder).status_code == 403
