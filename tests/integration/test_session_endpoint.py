class TestSessionEndpoint:
    async def test_initial_state(self, client):
        data = (await client.get("/v1/session")).json()
        assert data["active_conversation_id"] is None
        assert data["selected_model"] == "openai/gpt-4o"
        assert data["is_loading"] is False
        assert data["error"] is None
        assert data["generating"] == []

    async def test_select_model(self, client):
        response = await client.put("/v1/session", json={"selected_model": "anthropic/claude-sonnet-4"})
        assert response.status_code == 200
        assert response.json()["selected_model"] == "anthropic/claude-sonnet-4"

    async def test_set_and_clear_active(self, client):
        first = (await client.post("/v1/conversations", json={})).json()
        await client.post("/v1/conversations", json={})

        data = (await client.put("/v1/session", json={"active_conversation_id": first["id"]})).json()
        assert data["active_conversation_id"] == first["id"]

        data = (await client.put("/v1/session", json={"active_conversation_id": None})).json()
        assert data["active_conversation_id"] is None

    async def test_omitted_fields_unchanged(self, client):
        created = (await client.post("/v1/conversations", json={})).json()
        data = (await client.put("/v1/session", json={"selected_model": "x/y"})).json()
        assert data["active_conversation_id"] == created["id"]

    async def test_unknown_active_returns_404(self, client):
        response = await client.put("/v1/session", json={"active_conversation_id": "conv-missing"})
        assert response.status_code == 404

    async def test_clear_error(self, client, app_with_store):
        created = (await client.post("/v1/conversations", json={})).json()
        await client.post(f"/v1/conversations/{created['id']}/messages", json={"text": "hi", "model": "acme/fail"})
        await app_with_store.state.session_store.wait_idle()
        assert (await client.get("/v1/session")).json()["error"] == "Upstream exploded"

        response = await client.delete("/v1/session/error")

        assert response.status_code == 204
        assert (await client.get("/v1/session")).json()["error"] is None
