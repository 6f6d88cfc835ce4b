"""Tests for the /oauth/authorize, /oauth/token and discovery endpoints."""
import base64
from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import CLIENT_ID, REDIRECT_URI
from services import EXTENSION_KEY


def authorize_params(challenge, **overrides):
    params = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "state": "xyz state",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def location_query(response):
    location = response.headers["Location"]
    return urlparse(location), parse_qs(urlparse(location).query)


@pytest.fixture
def user_id(make_user, sign_in):
    user_id = make_user("alice@example.com")
    sign_in(user_id)
    return user_id


def set_allowed_clients(app, *client_ids):
    services = app.extensions[EXTENSION_KEY]
    services.settings = replace(services.settings, allowed_client_ids=tuple(client_ids))


class TestAuthorize:
    def test_missing_client_id_is_json_error(self, client, pkce_pair):
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1], client_id=None))
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_request"

    def test_invalid_redirect_uri_is_json_error(self, client, pkce_pair):
        response = client.get(
            "/oauth/authorize",
            query_string=authorize_params(pkce_pair[1], redirect_uri="https://client.example/cb#frag"),
        )
        assert response.status_code == 400
        assert response.get_json()["error_description"] == "Invalid redirect_uri"

    @pytest.mark.parametrize("overrides,error", [
        ({"response_type": "token"}, "unsupported_response_type"),
        ({"code_challenge": None}, "invalid_request"),
        ({"code_challenge": "short"}, "invalid_request"),
        ({"code_challenge_method": "S512"}, "invalid_request"),
        ({"code_challenge_method": ""}, "invalid_request"),
    ])
    def test_errors_redirect_to_client(self, client, user_id, pkce_pair, overrides, error):
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1], **overrides))
        assert response.status_code == 302
        parsed, query = location_query(response)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == REDIRECT_URI
        assert query["error"] == [error]
        assert query["state"] == ["xyz state"]
        assert "code" not in query

    def test_disallowed_client(self, app, client, user_id, pkce_pair):
        set_allowed_clients(app, "someone-else")
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1]))
        _, query = location_query(response)
        assert query["error"] == ["unauthorized_client"]

    def test_anonymous_user_is_sent_to_sign_in(self, client, pkce_pair):
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1]))
        assert response.status_code == 302
        parsed, query = location_query(response)
        assert parsed.path == "/auth/signin/google"
        callback = urlparse(query["callbackUrl"][0])
        assert callback.path == "/oauth/authorize"
        assert parse_qs(callback.query)["state"] == ["xyz state"]
        assert parse_qs(callback.query)["code_challenge"] == [pkce_pair[1]]

    def test_signed_in_user_gets_code_and_state(self, client, user_id, pkce_pair):
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1]))
        assert response.status_code == 302
        _, query = location_query(response)
        assert query["code"][0]
        assert query["state"] == ["xyz state"]

    def test_existing_redirect_query_is_kept(self, client, user_id, pkce_pair):
        response = client.get(
            "/oauth/authorize",
            query_string=authorize_params(pkce_pair[1], redirect_uri="https://client.example/cb?tenant=7"),
        )
        _, query = location_query(response)
        assert query["tenant"] == ["7"]
        assert "code" in query

    def test_missing_method_defaults_to_plain(self, client, services, user_id, pkce_pair):
        verifier, _ = pkce_pair
        response = client.get(
            "/oauth/authorize",
            query_string=authorize_params(verifier, code_challenge_method=None),
        )
        _, query = location_query(response)
        token = client.post("/oauth/token", data={
            "grant_type": "authorization_code",
            "code": query["code"][0],
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
        })
        assert token.status_code == 200

    def test_session_for_deleted_user_is_ignored(self, client, sign_in, pkce_pair):
        sign_in("no-such-user")
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1]))
        assert urlparse(response.headers["Location"]).path == "/auth/signin/google"


class TestToken:
    @pytest.fixture
    def code(self, client, user_id, pkce_pair):
        response = client.get("/oauth/authorize", query_string=authorize_params(pkce_pair[1]))
        _, query = location_query(response)
        return query["code"][0]

    def token_body(self, auth_code, verifier, **overrides):
        body = {
            "grant_type": "authorization_code",
            "code": auth_code,
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
        }
        body.update(overrides)
        return {k: v for k, v in body.items() if v is not None}

    def test_form_exchange(self, client, code, pkce_pair):
        response = client.post("/oauth/token", data=self.token_body(code, pkce_pair[0]))
        assert response.status_code == 200
        payload = response.get_json()
        assert payload["token_type"] == "Bearer"
        assert payload["expires_in"] == 3600
        assert payload["scope"] == "mcp:tools"
        assert payload["access_token"]
        assert response.headers["Cache-Control"] == "no-store"

    def test_json_exchange(self, client, code, pkce_pair):
        response = client.post("/oauth/token", json=self.token_body(code, pkce_pair[0]))
        assert response.status_code == 200

    def test_multipart_exchange(self, client, code, pkce_pair):
        response = client.post(
            "/oauth/token",
            data=self.token_body(code, pkce_pair[0]),
            content_type="multipart/form-data",
        )
        assert response.status_code == 200

    def test_basic_auth_supplies_client_id(self, client, code, pkce_pair):
        credentials = base64.b64encode(f"{CLIENT_ID}:secret".encode()).decode()
        response = client.post(
            "/oauth/token",
            data=self.token_body(code, pkce_pair[0], client_id=None),
            headers={"Authorization": f"Basic {credentials}"},
        )
        assert response.status_code == 200

    def test_second_exchange_is_invalid_grant(self, client, code, pkce_pair):
        assert client.post("/oauth/token", data=self.token_body(code, pkce_pair[0])).status_code == 200
        response = client.post("/oauth/token", data=self.token_body(code, pkce_pair[0]))
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_grant"

    @pytest.mark.parametrize("overrides,error", [
        ({"grant_type": "refresh_token"}, "unsupported_grant_type"),
        ({"grant_type": None}, "unsupported_grant_type"),
        ({"code_verifier": None}, "invalid_request"),
        ({"code": None}, "invalid_request"),
        ({"code_verifier": "too-short"}, "invalid_request"),
        ({"redirect_uri": "https://client.example/elsewhere"}, "invalid_grant"),
        ({"client_id": "other-client"}, "invalid_grant"),
    ])
    def test_rejections(self, client, code, pkce_pair, overrides, error):
        response = client.post("/oauth/token", data=self.token_body(code, pkce_pair[0], **overrides))
        assert response.status_code == 400
        assert response.get_json()["error"] == error
        assert response.headers["Cache-Control"] == "no-store"

    def test_wrong_verifier(self, client, code):
        response = client.post("/oauth/token", data=self.token_body(code, "v" * 43))
        assert response.get_json()["error"] == "invalid_grant"

    def test_disallowed_client_at_token_endpoint(self, app, client, code, pkce_pair):
        set_allowed_clients(app, "someone-else")
        response = client.post("/oauth/token", data=self.token_body(code, pkce_pair[0]))
        assert response.get_json()["error"] == "unauthorized_client"

    def test_malformed_json_body(self, client):
        response = client.post("/oauth/token", data="{not json", content_type="application/json")
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_request"

    def test_cors_for_agent_origin(self, client, code, pkce_pair):
        response = client.post(
            "/oauth/token",
            data=self.token_body(code, "v" * 43),
            headers={"Origin": "https://claude.ai"},
        )
        assert response.status_code == 400
        assert response.headers["Access-Control-Allow-Origin"] == "https://claude.ai"

    def test_cors_preflight(self, client):
        response = client.options(
            "/oauth/token",
            headers={
                "Origin": "https://chatgpt.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )
        assert response.status_code == 200
        assert response.headers["Access-Control-Allow-Origin"] == "https://chatgpt.com"

    def test_no_cors_for_unknown_origin(self, client, code, pkce_pair):
        response = client.post(
            "/oauth/token",
            data=self.token_body(code, pkce_pair[0]),
            headers={"Origin": "https://evil.example"},
        )
        assert "Access-Control-Allow-Origin" not in response.headers


class TestDiscovery:
    def test_protected_resource_from_request_origin(self, client):
        payload = client.get("/.well-known/oauth-protected-resource").get_json()
        assert payload == {
            "resource": "http://localhost/api/mcp",
            "authorization_servers": ["http://localhost"],
            "bearer_methods_supported": ["header"],
            "scopes_supported": ["mcp:tools"],
        }

    def test_authorization_server_metadata(self, client):
        payload = client.get("/.well-known/oauth-authorization-server/api/mcp").get_json()
        assert payload["issuer"] == "http://localhost"
        assert payload["authorization_endpoint"] == "http://localhost/oauth/authorize"
        assert payload["token_endpoint"] == "http://localhost/oauth/token"
        assert payload["code_challenge_methods_supported"] == ["S256", "plain"]
        assert payload["grant_types_supported"] == ["authorization_code"]

    def test_forwarded_headers_win_over_origin(self, client):
        payload = client.get(
            "/.well-known/oauth-authorization-server",
            headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "chess.example.com"},
        ).get_json()
        assert payload["issuer"] == "https://chess.example.com"

    def test_configured_public_url_wins(self, services, client):
        services.settings = replace(services.settings, public_url="chess.example.org/")
        payload = client.get(
            "/.well-known/oauth-protected-resource",
            headers={"X-Forwarded-Proto": "http", "X-Forwarded-Host": "tunnel.example"},
        ).get_json()
        assert payload["resource"] == "https://chess.example.org/api/mcp"
