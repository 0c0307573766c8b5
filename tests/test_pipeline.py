import pytest

from chatcommerce.catalog import Catalog
from chatcommerce.completion import ASSISTANT, SYSTEM, TOOL, USER, ChatMessage, Completion, ToolCall
from chatcommerce.errors import EmptyReplyError, FatalCompletionError, ToolExecutionError
from chatcommerce.pipeline import DONE, AgentProfile

from conftest import FakeCompletionService, RecordingExecutor, make_orchestrator, make_turn

ORDER_ARGS = {
    "items": [{"product_name": "Pizza Reine", "quantity": 1, "selected_variants": {"Taille": "Petite"}}],
    "customer_name": "Kofi",
    "customer_phone": "0707123456",
}


def _tool_completion(name="create_order", arguments=None):
    return Completion(tool_calls=[ToolCall(id="call-1", name=name, arguments=arguments or ORDER_ARGS)], tokens_used=10)


class BrokenKnowledge:
    def search(self, agent_id, query, topk=3):
        raise RuntimeError("index unavailable")


class StaticKnowledge:
    def search(self, agent_id, query, topk=3):
        return ["Livraison gratuite à Cocody."]


@pytest.mark.asyncio
async def test_plain_text_reply_skips_tool_steps(profile, catalog):
    service = FakeCompletionService([Completion(text="Bonjour ! La pizza coûte 15000 FCFA.", tokens_used=12)])
    executor = RecordingExecutor()
    orchestrator = make_orchestrator(service, executor)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.reply_text == "Bonjour ! La pizza coûte 15000 FCFA."
    assert result.tokens_used == 12
    assert result.state == DONE
    assert result.integrity_issues == []
    assert executor.calls == []
    assert len(service.requests) == 1
    assert service.requests[0].tools_enabled


@pytest.mark.asyncio
async def test_system_prompt_carries_catalog_and_knowledge(profile, catalog):
    service = FakeCompletionService([Completion(text="ok")])
    orchestrator = make_orchestrator(service, knowledge=StaticKnowledge())

    await orchestrator.process_turn(make_turn(profile, catalog))

    system = service.requests[0].messages[0]
    assert system.role == SYSTEM
    assert "Agent Awa" in system.content
    assert "Pizza Reine" in system.content
    assert "Livraison gratuite" in system.content


@pytest.mark.asyncio
async def test_history_is_bounded(profile, catalog):
    history = [ChatMessage(role=USER if n % 2 == 0 else ASSISTANT, content=f"m{n}") for n in range(20)]
    service = FakeCompletionService([Completion(text="ok")])
    orchestrator = make_orchestrator(service, history_window=5)

    await orchestrator.process_turn(make_turn(profile, catalog, history=history))

    messages = service.requests[0].messages
    assert len(messages) == 7
    assert [message.content for message in messages[1:6]] == ["m15", "m16", "m17", "m18", "m19"]
    assert messages[-1].content == "Bonjour"


@pytest.mark.asyncio
async def test_knowledge_failure_is_ignored(profile, catalog):
    service = FakeCompletionService([Completion(text="ok")])
    orchestrator = make_orchestrator(service, knowledge=BrokenKnowledge())

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.reply_text == "ok"


@pytest.mark.asyncio
async def test_tool_flow_runs_second_completion_without_tools(profile, catalog):
    service = FakeCompletionService([_tool_completion(), Completion(text="Commande confirmée !", tokens_used=5)])
    executor = RecordingExecutor({"create_order": {"success": True, "order_id": "o-1"}})
    orchestrator = make_orchestrator(service, executor)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.reply_text == "Commande confirmée !"
    assert result.tokens_used == 15
    assert result.tool_results == [{"tool": "create_order", "call_id": "call-1", "success": True, "order_id": "o-1"}]
    assert executor.calls[0][0] == "create_order"
    assert executor.calls[0][2].owner_id == "owner-1"

    second = service.requests[1]
    assert not second.tools_enabled
    assert second.messages[-2].role == ASSISTANT
    assert second.messages[-2].tool_calls[0].id == "call-1"
    assert second.messages[-1].role == TOOL
    assert second.messages[-1].tool_result["order_id"] == "o-1"


@pytest.mark.asyncio
async def test_missing_variant_is_blocked_before_execution(profile, catalog):
    arguments = {"items": [{"product_name": "Pizza Reine", "quantity": 1}], "customer_name": "Kofi", "customer_phone": "1"}
    service = FakeCompletionService([_tool_completion(arguments=arguments), Completion(text="Quelle taille ?")])
    executor = RecordingExecutor()
    orchestrator = make_orchestrator(service, executor)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert executor.calls == []
    blocked = result.tool_results[0]
    assert blocked["success"] is False
    assert blocked["blocked_by_precheck"] is True
    assert "Petite" in blocked["error"]
    assert result.reply_text == "Quelle taille ?"


@pytest.mark.asyncio
async def test_json_string_arguments_are_parsed(profile, catalog):
    call = ToolCall(id="c", name="find_order", arguments='{"phone_number": "0707"}')
    service = FakeCompletionService([Completion(tool_calls=[call]), Completion(text="ok")])
    executor = RecordingExecutor()
    orchestrator = make_orchestrator(service, executor)

    await orchestrator.process_turn(make_turn(profile, catalog))

    assert executor.calls[0][1] == {"phone_number": "0707"}


@pytest.mark.asyncio
async def test_unparseable_arguments_become_failure_result(profile, catalog):
    call = ToolCall(id="c", name="find_order", arguments="not json")
    service = FakeCompletionService([Completion(tool_calls=[call]), Completion(text="Pardon ?")])
    executor = RecordingExecutor()
    orchestrator = make_orchestrator(service, executor)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert executor.calls == []
    assert result.tool_results[0]["success"] is False


@pytest.mark.asyncio
async def test_credit_gate_short_circuits_without_completion(profile, catalog, ledger):
    ledger.open_account("owner-1", 0)
    service = FakeCompletionService()
    orchestrator = make_orchestrator(service, ledger=ledger, credits_exhausted_message="Service indisponible.")

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.short_circuited
    assert result.reply_text == "Service indisponible."
    assert result.credits_charged == 0
    assert service.requests == []
    assert ledger.balance("owner-1") == 0


@pytest.mark.asyncio
async def test_reply_is_charged_at_done(profile, catalog, ledger):
    ledger.open_account("owner-1", 10)
    orchestrator = make_orchestrator(FakeCompletionService([Completion(text="ok")]), ledger=ledger)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.credits_charged == 1
    assert ledger.balance("owner-1") == 9


@pytest.mark.asyncio
async def test_voice_agents_pay_the_surcharge(catalog, ledger):
    ledger.open_account("owner-1", 10)
    voice = AgentProfile(agent_id="shop-1", owner_id="owner-1", voice_enabled=True)
    orchestrator = make_orchestrator(FakeCompletionService([Completion(text="ok")]), ledger=ledger)

    result = await orchestrator.process_turn(make_turn(voice, catalog))

    assert result.credits_charged == 5
    assert ledger.balance("owner-1") == 5


@pytest.mark.asyncio
async def test_billable_tool_is_charged(profile, catalog, ledger):
    ledger.open_account("owner-1", 10)
    service = FakeCompletionService([_tool_completion(), Completion(text="ok")])
    orchestrator = make_orchestrator(service, ledger=ledger, tool_costs={"create_order": 2})

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.credits_charged == 3
    assert ledger.balance("owner-1") == 7


@pytest.mark.asyncio
async def test_failed_tool_is_refunded(profile, catalog, ledger):
    ledger.open_account("owner-1", 10)
    service = FakeCompletionService([_tool_completion(), Completion(text="Rupture de stock.")])
    executor = RecordingExecutor(error=ToolExecutionError("Not enough stock", context={"available_stock": 0}))
    orchestrator = make_orchestrator(service, executor, ledger=ledger, tool_costs={"create_order": 2})

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.tool_results[0]["success"] is False
    assert result.tool_results[0]["available_stock"] == 0
    assert result.credits_charged == 1
    assert ledger.balance("owner-1") == 9


@pytest.mark.asyncio
async def test_insufficient_credits_only_blocks_the_tool(profile, catalog, ledger):
    ledger.open_account("owner-1", 1)
    service = FakeCompletionService([_tool_completion(), Completion(text="Crédit insuffisant.")])
    executor = RecordingExecutor()
    orchestrator = make_orchestrator(service, executor, ledger=ledger, tool_costs={"create_order": 2})

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert executor.calls == []
    assert result.tool_results[0]["code"] == "insufficient_credits"
    assert result.reply_text == "Crédit insuffisant."
    assert result.credits_charged == 1
    assert ledger.balance("owner-1") == 0


@pytest.mark.asyncio
async def test_integrity_issues_are_reported_not_enforced(profile):
    catalog = Catalog.from_raw([{"name": "Pizza", "price": 15000}])
    service = FakeCompletionService([Completion(text="Cette pizza coûte 99999 FCFA.")])
    orchestrator = make_orchestrator(service)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    assert result.reply_text == "Cette pizza coûte 99999 FCFA."
    assert [issue.mentioned_price for issue in result.integrity_issues] == [99999]


@pytest.mark.asyncio
async def test_fatal_completion_error_propagates(profile, catalog):
    service = FakeCompletionService([FatalCompletionError("blocked", code="content_policy")])
    orchestrator = make_orchestrator(service)

    with pytest.raises(FatalCompletionError):
        await orchestrator.process_turn(make_turn(profile, catalog))


@pytest.mark.asyncio
async def test_unexpected_tool_crash_refunds_before_propagating(profile, catalog, ledger):
    ledger.open_account("owner-1", 10)
    service = FakeCompletionService([_tool_completion(), Completion(text="ok")])
    executor = RecordingExecutor(error=KeyError("order_id"))
    orchestrator = make_orchestrator(service, executor, ledger=ledger, tool_costs={"create_order": 2})

    with pytest.raises(KeyError):
        await orchestrator.process_turn(make_turn(profile, catalog))

    assert ledger.balance("owner-1") == 10
    assert len(service.requests) == 1


@pytest.mark.asyncio
async def test_failed_tool_result_carries_error_code(profile, catalog):
    service = FakeCompletionService([_tool_completion(), Completion(text="Désolé.")])
    executor = RecordingExecutor(error=ToolExecutionError("Order has no valid items."))
    orchestrator = make_orchestrator(service, executor)

    result = await orchestrator.process_turn(make_turn(profile, catalog))

    failed = result.tool_results[0]
    assert failed["success"] is False
    assert failed["error"] == "Order has no valid items."
    assert failed["code"] == "tool_failed"


@pytest.mark.asyncio
async def test_blank_reply_is_an_error_and_not_charged(profile, catalog, ledger):
    ledger.open_account("owner-1", 10)
    orchestrator = make_orchestrator(FakeCompletionService([Completion(text="   ", tokens_used=3)]), ledger=ledger)

    with pytest.raises(EmptyReplyError):
        await orchestrator.process_turn(make_turn(profile, catalog))

    assert ledger.balance("owner-1") == 10
