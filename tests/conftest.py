from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from chatcommerce.catalog import Catalog
from chatcommerce.completion import Completion, CompletionRequest, RetryingCompletionClient
from chatcommerce.credits import CreditsLedger
from chatcommerce.pipeline import AgentProfile, TurnInput, TurnOrchestrator
from chatcommerce.tools import MerchantContext

RAW_PRODUCTS: List[Dict[str, Any]] = [
    {
        "id": "pizza",
        "name": "Pizza Reine",
        "price": 15000,
        "variants": [
            {"name": "Taille", "type": "fixed", "options": ["Petite", "Moyenne", "Grande"]},
        ],
    },
    {
        "id": "burger",
        "name": "Burger Maison",
        "price": 15000,
        "variants": [
            {"name": "Extras", "type": "supplement", "options": [{"value": "Fromage", "price": 500}]},
        ],
    },
    {
        "id": "cream",
        "name": "Crème Karité",
        "price_fcfa": "5 000",
        "image_url": "https://cdn.example.com/cream.jpg",
        "variants": [
            {"name": "Format", "type": "fixed", "options": [{"value": "Small (50g)", "image": "https://cdn.example.com/small.jpg"}]},
        ],
    },
    {
        "id": "ebook",
        "name": "Guide Cuisine",
        "price": 3000,
        "product_type": "digital",
    },
    {
        "id": "juice",
        "name": "Jus Bissap",
        "price": 1000,
        "stock_quantity": 2,
    },
]


@pytest.fixture
def catalog() -> Catalog:
    return Catalog.from_raw(RAW_PRODUCTS)


@pytest.fixture
def merchant(catalog: Catalog) -> MerchantContext:
    return MerchantContext(agent_id="shop-1", owner_id="owner-1", catalog=catalog, session_id="s-1")


@pytest.fixture
def profile() -> AgentProfile:
    return AgentProfile(agent_id="shop-1", owner_id="owner-1", name="Awa")


@pytest.fixture
def ledger(tmp_path) -> CreditsLedger:
    return CreditsLedger.from_url(f"sqlite:///{tmp_path / 'credits.db'}")


class FakeCompletionService:
    """Returns queued completions (or raises queued exceptions) and records requests."""

    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.requests: List[CompletionRequest] = []

    async def send(self, request: CompletionRequest) -> Completion:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("no completion queued")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingExecutor:
    def __init__(self, results: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None) -> None:
        self.calls: List[Any] = []
        self.results = results or {}
        self.error = error

    async def execute(self, name: str, arguments: Dict[str, Any], context: MerchantContext) -> Dict[str, Any]:
        self.calls.append((name, arguments, context))
        if self.error is not None:
            raise self.error
        return self.results.get(name, {"success": True})


class FakeChannel:
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Any] = []
        self.fail = fail

    async def send(self, recipient: str, text: str) -> None:
        self.sent.append((recipient, text))
        if self.fail:
            raise ConnectionError("channel closed")


async def no_sleep(_: float) -> None:
    return None


def make_orchestrator(service, executor=None, ledger=None, **kwargs) -> TurnOrchestrator:
    client = RetryingCompletionClient(service, max_attempts=kwargs.pop("max_attempts", 3), sleep=no_sleep)
    return TurnOrchestrator(
        completion_client=client,
        tool_executor=executor or RecordingExecutor(),
        ledger=ledger,
        prompt_template=kwargs.pop("prompt_template", "Agent <<AGENT_NAME>>\n<<CATALOG>>\n<<KNOWLEDGE>>"),
        **kwargs,
    )


def make_turn(profile: AgentProfile, catalog: Catalog, message: str = "Bonjour", **kwargs) -> TurnInput:
    return TurnInput(agent=profile, catalog=catalog, user_message=message, session_id="turn-1", **kwargs)
