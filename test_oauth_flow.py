"""End-to-end OAuth flow: discovery, authorize, token exchange, then MCP tool calls."""
from urllib.parse import parse_qs, urlparse

from conftest import CLIENT_ID, REDIRECT_URI


def test_oauth_flow(client, make_user, sign_in, pkce_pair):
    """Test the complete flow with the Authorization Code Grant and PKCE."""
    alice = make_user("alice@example.com", name="Alice")
    bob = make_user("bob@example.com", name="Bob")
    verifier, challenge = pkce_pair

    # Step 1: anonymous tool call is challenged
    response = client.post("/api/mcp", json={
        "jsonrpc": "2.0",
        "id": 1,
        "method": "tools/call",
        "params": {"name": "new_game", "arguments": {"opponentEmail": "bob@example.com"}},
    })
    assert response.status_code == 401
    assert "resource_metadata=" in response.headers["WWW-Authenticate"]

    # Step 2: discovery
    resource = client.get("/.well-known/oauth-protected-resource").get_json()
    issuer = resource["authorization_servers"][0]
    metadata = client.get("/.well-known/oauth-authorization-server").get_json()
    assert metadata["issuer"] == issuer
    authorize_path = urlparse(metadata["authorization_endpoint"]).path
    token_path = urlparse(metadata["token_endpoint"]).path

    # Step 3: user signs in, then authorizes
    sign_in(alice)
    response = client.get(authorize_path, query_string={
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "state": "round-trip",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    })
    assert response.status_code == 302
    query = parse_qs(urlparse(response.headers["Location"]).query)
    assert query["state"] == ["round-trip"]

    # Step 4: token exchange
    response = client.post(token_path, data={
        "grant_type": "authorization_code",
        "code": query["code"][0],
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "code_verifier": verifier,
    })
    assert response.status_code == 200
    access_token = response.get_json()["access_token"]

    # Step 5: without the session, the bearer token alone identifies the user
    with client.session_transaction() as session:
        session.clear()
    headers = {"Authorization": f"Bearer {access_token}"}
    response = client.post("/api/mcp", headers=headers, json={
        "jsonrpc": "2.0",
        "id": 2,
        "method": "tools/call",
        "params": {"name": "new_game", "arguments": {"opponentEmail": "bob@example.com"}},
    })
    assert response.status_code == 200
    game = response.get_json()["result"]["structuredContent"]["game"]
    assert game["white"]["id"] == alice
    assert game["black"]["id"] == bob

    response = client.post("/api/mcp", headers=headers, json={
        "jsonrpc": "2.0",
        "id": 3,
        "method": "tools/call",
        "params": {"name": "list_games", "arguments": {"scope": "my"}},
    })
    games = response.get_json()["result"]["structuredContent"]["games"]
    assert [g["id"] for g in games] == [game["id"]]
