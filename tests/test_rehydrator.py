import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatstream.orchestrator import make_reconciler, new_message, open_turn, run_turn
from chatstream.rehydrator import Rehydrator, needs_rehydration
from chatstream.schemas import ChatMessage, MultiSearchEntry
from tests.fakes import FakeChatModelClient, FakeImageClient, FakeTavilyClient, services_for


def searched_message(conversation_id: str) -> ChatMessage:
    message = new_message(conversation_id, "assistant", "<SEARCHREQUEST>tides</SEARCHREQUEST>")
    message.search_request = "tides"
    message.search_completed = True
    message.multi_search = [
        MultiSearchEntry(query="tides", completed=True),
        MultiSearchEntry(query="moon phase", completed=True, error=True),
    ]
    message.directive_states = {"search": "completed"}
    return message


@pytest.mark.asyncio
async def test_rehydrate_restores_missing_results_once(app_factory):
    tavily = FakeTavilyClient()
    app, _, _, _ = app_factory(fake_tavily=tavily)
    async with LifespanManager(app):
        services = services_for(app)
        db = app.state.db
        convo = await db.create_conversation()
        message = searched_message(convo["id"])
        await db.add_message_to_conversation(convo["id"], message.model_dump())
        assert needs_rehydration(message)

        rehydrator = Rehydrator(tavily)
        restored = await rehydrator.rehydrate([message], lambda m: make_reconciler(m, services))
        assert restored == 1
        assert tavily.search_calls == ["tides"]
        assert message.search_results.query == "tides"
        assert message.multi_search[0].results is not None
        assert message.multi_search[1].results is None
        assert message.multi_search[1].error is True
        assert len(message.multi_search) == 2
        assert message.directive_states == {"search": "completed"}

        again = await rehydrator.rehydrate([message], lambda m: make_reconciler(m, services))
        assert again == 0
        assert tavily.search_calls == ["tides"]

        stored = ChatMessage(**await db.get_message(convo["id"], message.id))
        assert stored.search_results is not None
        assert not needs_rehydration(stored)


@pytest.mark.asyncio
async def test_rehydrate_images_only_when_enabled(app_factory):
    images = FakeImageClient()
    app, _, _, _ = app_factory(fake_images=images)
    async with LifespanManager(app):
        services = services_for(app)
        message = new_message("c1", "assistant", "<IMG>a kite</IMG>")
        message.image_prompt = "a kite"
        message.image_generation_completed = True

        skipped = await Rehydrator(FakeTavilyClient(), images, include_images=False).rehydrate(
            [message], lambda m: make_reconciler(m, services)
        )
        assert skipped == 0
        assert images.calls == []

        restored = await Rehydrator(FakeTavilyClient(), images).rehydrate(
            [message], lambda m: make_reconciler(m, services)
        )
        assert restored == 1
        assert images.calls == ["a kite"]
        assert message.generated_images[0].alt == "a kite"


def test_failed_side_effects_are_not_rehydrated():
    message = new_message("c1", "assistant")
    message.search_request = "x"
    message.search_completed = True
    message.search_error = True
    message.image_prompt = "y"
    message.image_generation_completed = True
    message.image_generation_error = True
    assert not needs_rehydration(message)
    assert not needs_rehydration(new_message("c1", "user", "<SEARCHREQUEST>x</SEARCHREQUEST>"))


@pytest.mark.asyncio
async def test_failed_first_step_is_not_searched_again(app_factory):
    tavily = FakeTavilyClient(failures=["bad"])
    llm = FakeChatModelClient(
        scripts=[["<SEARCHREQUEST>bad</SEARCHREQUEST>", "<SEARCHREQUEST>good</SEARCHREQUEST>"]]
    )
    app, _, _, _ = app_factory(fake_llm=llm, fake_tavily=tavily, persist_search_results=False)
    async with LifespanManager(app):
        services = services_for(app)
        convo = await app.state.db.create_conversation()
        prepared = await open_turn(services, convo, "two lookups")
        await run_turn(prepared, services)
        assert tavily.search_calls == ["bad", "good"]

        rows = await app.state.db.list_messages(convo["id"])
        messages = [ChatMessage(**row) for row in rows]
        assistant = messages[1]
        assert assistant.multi_search[0].error is True
        assert assistant.search_error is False
        assert assistant.search_results is None

        rehydrator = Rehydrator(tavily)
        assert await rehydrator.rehydrate(messages, lambda m: make_reconciler(m, services)) == 1
        assert tavily.search_calls == ["bad", "good", "good"]
        assert assistant.search_results is None
        assert assistant.multi_search[0].results is None
        assert assistant.multi_search[1].results.query == "good"
        assert not needs_rehydration(assistant)

        assert await rehydrator.rehydrate(messages, lambda m: make_reconciler(m, services)) == 0
        assert tavily.search_calls == ["bad", "good", "good"]


@pytest.mark.asyncio
async def test_messages_endpoint_rehydrates_unpersisted_results(app_factory):
    tavily = FakeTavilyClient()
    llm = FakeChatModelClient(scripts=[["Looking. <SEARCHREQUEST>tides</SEARCHREQUEST>"]])
    app, _, _, _ = app_factory(fake_llm=llm, fake_tavily=tavily, persist_search_results=False)
    async with LifespanManager(app):
        services = services_for(app)
        convo = await app.state.db.create_conversation()
        prepared = await open_turn(services, convo, "tide times")
        await run_turn(prepared, services)
        assert tavily.search_calls == ["tides"]

        stored = ChatMessage(**await app.state.db.get_message(convo["id"], prepared.assistant_message.id))
        assert stored.search_completed is True
        assert stored.search_results is None

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get(f"/api/conversations/{convo['id']}/messages", params={"rehydrate": "false"})
            assert res.status_code == 200
            assert res.json()["messages"][1]["search_results"] is None

            res = await client.get(f"/api/conversations/{convo['id']}/messages")
            assert res.status_code == 200
            data = res.json()
            assert data["rehydrated"] == 1
            assistant = data["messages"][1]
            assert assistant["search_results"]["query"] == "tides"
            assert assistant["search_completed"] is True
            assert len(assistant["multi_search"]) == 1
        assert tavily.search_calls == ["tides", "tides"]
