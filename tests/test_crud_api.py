from datetime import timedelta

from fastapi.testclient import TestClient

from tests.base import TAG_POLICY, TICKET_POLICY, DatabaseTestCase, Tag, Ticket

from crudkit.core.deps import require_role
from crudkit.core.security import issue_access_token
from crudkit.db.session import get_db
from crudkit.main import Resource, create_app


def _ticket_ref(row, caller):
    return {"ref": f"T-{row.id}", "title": row.title, "viewer": caller.subject}


def _broken_ref(row, caller):
    raise ValueError("cannot shape ticket")


app = create_app(
    [
        Resource("tickets", Ticket, TICKET_POLICY),
        Resource("tags", Tag, TAG_POLICY, id_field="code"),
        Resource("ticket-refs", Ticket, TICKET_POLICY, transform=_ticket_ref),
        Resource("broken-refs", Ticket, TICKET_POLICY, transform=_broken_ref),
    ]
)
admin_app = create_app(
    [Resource("tags", Tag, TAG_POLICY, id_field="code")],
    get_caller_dependency=require_role("admin"),
)


class CrudApiTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        admin_app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        admin_app.dependency_overrides.clear()
        super().tearDown()

    @staticmethod
    def _auth_headers(tenant_id=1, roles=("agent",), subject="agent-1") -> dict[str, str]:
        token = issue_access_token(subject, tenant_id=tenant_id, roles=roles, expires_delta=timedelta(minutes=30))
        return {"Authorization": f"Bearer {token}"}

    # ---- identity ----

    def test_missing_or_invalid_token_is_401(self):
        self.assertEqual(self.client.get("/api/tickets/").status_code, 401)
        bad = self.client.get("/api/tickets/", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(bad.status_code, 401)
        forged = issue_access_token("agent-1", tenant_id=1, secret="some-other-secret")
        response = self.client.get("/api/tickets/", headers={"Authorization": f"Bearer {forged}"})
        self.assertEqual(response.status_code, 401)

    def test_role_guard(self):
        with TestClient(admin_app) as client:
            denied = client.get("/api/tags/", headers=self._auth_headers(roles=("agent",)))
            self.assertEqual(denied.status_code, 403)
            allowed = client.get("/api/tags/", headers=self._auth_headers(roles=("Admin",)))
            self.assertEqual(allowed.status_code, 200)
            self.assertEqual(allowed.json(), {"data": [], "total": 0})

    # ---- listing ----

    def test_list_with_query_string(self):
        self._seed_ticket(title="A", status="open", priority=1)
        self._seed_ticket(title="B", status="open", priority=5)
        self._seed_ticket(title="C", status="closed", priority=3)
        self._seed_ticket(title="Foreign", status="open", priority=9, tenant_id=2)

        response = self.client.get(
            "/api/tickets/",
            headers=self._auth_headers(),
            params=[
                ("filters[0][field]", "status"),
                ("filters[0][operator]", "eq"),
                ("filters[0][value]", "open"),
                ("sorters[0][field]", "priority"),
                ("sorters[0][order]", "desc"),
                ("current", "1"),
                ("pageSize", "1"),
            ],
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total"], 2)
        self.assertEqual([row["title"] for row in body["data"]], ["B"])
        self.assertIn("created_at", body["data"][0])
        self.assertIsInstance(body["data"][0]["created_at"], str)

    def test_list_rejects_unlisted_filter_and_sort(self):
        headers = self._auth_headers()
        response = self.client.get(
            "/api/tickets/",
            headers=headers,
            params=[("filters[0][field]", "tenant_id"), ("filters[0][value]", "2")],
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("tenant_id", response.json()["detail"])

        response = self.client.get("/api/tickets/", headers=headers, params={"sorters": "notes"})
        self.assertEqual(response.status_code, 400)

    def test_list_with_json_body(self):
        self._seed_ticket(title="open one", status="open")
        self._seed_ticket(title="closed one", status="closed")
        headers = self._auth_headers()

        response = self.client.post(
            "/api/tickets/list",
            headers=headers,
            json={
                "filters": [{"field": "status", "operator": "eq", "value": "closed"}],
                "sort": {"field": "title", "order": "asc"},
                "pagination": {"current": 1, "pageSize": 10},
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 1)
        self.assertEqual(response.json()["data"][0]["title"], "closed one")

        everything = self.client.post("/api/tickets/list", headers=headers)
        self.assertEqual(everything.status_code, 200)
        self.assertEqual(everything.json()["total"], 2)

        search = self.client.post("/api/tickets/list", headers=headers, json={"q": "OPEN"})
        self.assertEqual(search.json()["total"], 1)

        malformed = self.client.post("/api/tickets/list", headers=headers, json={"pagination": {"current": "abc"}})
        self.assertEqual(malformed.status_code, 400)

    # ---- single records ----

    def test_create_get_update_save_delete(self):
        headers = self._auth_headers()

        created = self.client.post("/api/tickets/", headers=headers, json={"tenant_id": 1, "title": "Fresh"})
        self.assertEqual(created.status_code, 200)
        ticket = created.json()["data"]
        self.assertEqual((ticket["title"], ticket["status"]), ("Fresh", "open"))
        ticket_id = ticket["id"]

        got = self.client.get(f"/api/tickets/{ticket_id}", headers=headers)
        self.assertEqual(got.status_code, 200)
        self.assertEqual(got.json()["data"]["id"], ticket_id)

        empty = self.client.patch(f"/api/tickets/{ticket_id}", headers=headers, json={})
        self.assertEqual(empty.status_code, 400)

        patched = self.client.patch(
            f"/api/tickets/{ticket_id}", headers=headers, json={"title": "Renamed", "notes": "n"}
        )
        self.assertEqual(patched.status_code, 200)
        self.assertEqual(patched.json()["data"]["title"], "Renamed")

        saved = self.client.put(f"/api/tickets/{ticket_id}", headers=headers, json={"tenant_id": 1, "title": "Saved"})
        self.assertEqual(saved.status_code, 200)
        self.assertEqual(saved.json()["data"]["title"], "Saved")
        self.assertIsNone(saved.json()["data"]["notes"])

        deleted = self.client.delete(f"/api/tickets/{ticket_id}", headers=headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.json(), {"data": 1})

        missing = self.client.get(f"/api/tickets/{ticket_id}", headers=headers)
        self.assertEqual(missing.status_code, 404)

    def test_other_tenant_rows_look_missing(self):
        foreign = self._seed_ticket(tenant_id=2)
        headers = self._auth_headers(tenant_id=1)
        self.assertEqual(self.client.get(f"/api/tickets/{foreign}", headers=headers).status_code, 404)
        self.assertEqual(
            self.client.patch(f"/api/tickets/{foreign}", headers=headers, json={"title": "x"}).status_code, 404
        )
        self.assertEqual(self.client.delete(f"/api/tickets/{foreign}", headers=headers).status_code, 404)

    def test_create_outside_scope_is_rejected(self):
        response = self.client.post("/api/tickets/", headers=self._auth_headers(), json={"tenant_id": 2, "title": "x"})
        self.assertEqual(response.status_code, 400)

    def test_bad_identifier_and_body_are_400(self):
        headers = self._auth_headers()
        self.assertEqual(self.client.get("/api/tickets/abc", headers=headers).status_code, 400)
        response = self.client.post("/api/tickets/", headers=headers, json=[1, 2])
        self.assertEqual(response.status_code, 400)
        unknown = self.client.post("/api/tickets/", headers=headers, json={"tenant_id": 1, "title": "x", "owner": 1})
        self.assertEqual(unknown.status_code, 400)
        self.assertIn("owner", unknown.json()["detail"])

    def test_storage_errors_are_templated(self):
        headers = self._auth_headers()
        first = self.client.post("/api/tags/", headers=headers, json={"code": "bug", "label": "Bug"})
        self.assertEqual(first.status_code, 200)
        duplicate = self.client.post("/api/tags/", headers=headers, json={"code": "bug", "label": "Again"})
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.json()["detail"], "Storage operation failed")

    # ---- many ----

    def test_get_many_and_delete_many(self):
        first = self._seed_ticket(title="one")
        second = self._seed_ticket(title="two")
        foreign = self._seed_ticket(title="theirs", tenant_id=2)
        headers = self._auth_headers()

        many = self.client.get(
            "/api/tickets/many", headers=headers, params=[("ids[]", str(second)), ("ids[]", str(first))]
        )
        self.assertEqual(many.status_code, 200)
        self.assertEqual([row["title"] for row in many.json()["data"]], ["two", "one"])

        self.assertEqual(self.client.get("/api/tickets/many", headers=headers).status_code, 400)

        by_body = self.client.post("/api/tickets/getMany", headers=headers, json={"ids": [first, foreign]})
        self.assertEqual([row["id"] for row in by_body.json()["data"]], [first])

        empty = self.client.post("/api/tickets/getMany", headers=headers, json={"ids": []})
        self.assertEqual(empty.json(), {"data": []})

        nothing = self.client.post("/api/tickets/deleteMany", headers=headers, json={"ids": []})
        self.assertEqual(nothing.json(), {"data": 0})

        removed = self.client.post(
            "/api/tickets/deleteMany", headers=headers, json={"ids": [first, second, foreign]}
        )
        self.assertEqual(removed.status_code, 200)
        self.assertEqual(removed.json(), {"data": 2})

    # ---- shaping and hardening ----

    def test_transform_shapes_response(self):
        ticket_id = self._seed_ticket(title="Shaped")
        response = self.client.get(f"/api/ticket-refs/{ticket_id}", headers=self._auth_headers(subject="viewer-7"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(), {"data": {"ref": f"T-{ticket_id}", "title": "Shaped", "viewer": "viewer-7"}}
        )

    def test_responses_carry_hardening_headers(self):
        response = self.client.get("/health", headers={"X-Request-ID": "check-42"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})
        self.assertEqual(response.headers.get("x-request-id"), "check-42")
        self.assertEqual(response.headers.get("cache-control"), "no-store")
        self.assertEqual(response.headers.get("x-content-type-options"), "nosniff")

        unauthorized = self.client.get("/api/tickets/", headers={"X-Request-ID": "bad id"})
        self.assertEqual(unauthorized.status_code, 401)
        self.assertNotEqual(unauthorized.headers.get("x-request-id"), "bad id")
        self.assertEqual(unauthorized.headers.get("x-frame-options"), "DENY")

    def test_unexpected_failure_is_a_templated_400(self):
        ticket_id = self._seed_ticket(title="Unshapeable")
        headers = {**self._auth_headers(), "X-Request-ID": "req-9"}
        with self.assertLogs("crudkit.http", level="ERROR") as logs:
            response = self.client.get(f"/api/broken-refs/{ticket_id}", headers=headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"detail": "Request could not be processed"})
        self.assertNotIn("cannot shape", response.text)
        self.assertEqual(response.headers.get("x-request-id"), "req-9")
        self.assertEqual(response.headers.get("cache-control"), "no-store")
        self.assertIn("error=ValueError", logs.output[0])
        self.assertIn("request_id=req-9", logs.output[0])

    def test_request_id_and_subject_reach_log_lines(self):
        headers = {**self._auth_headers(subject="agent-5"), "X-Request-ID": "trace-5"}
        with self.assertLogs("crudkit", level="INFO") as logs:
            response = self.client.post("/api/tickets/", headers=headers, json={"tenant_id": 1, "title": "Logged"})
        self.assertEqual(response.status_code, 200)
        created = [line for line in logs.output if "record_created" in line]
        self.assertEqual(len(created), 1)
        self.assertIn("subject=agent-5 request_id=trace-5", created[0])
        access = [line for line in logs.output if "POST /api/tickets/" in line]
        self.assertEqual(len(access), 1)
        self.assertIn("subject=agent-5 request_id=trace-5", access[0])
