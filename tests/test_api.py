"""Tests for the HTTP API."""

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from otc_desk.api.main import create_app
from otc_desk.engine.desk import OTCDesk

BTC_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


@pytest.fixture
def api(desk: OTCDesk) -> Iterator[TestClient]:
    """API client serving the test desk."""
    with TestClient(create_app(desk)) as client:
        yield client


def register(api: TestClient, name: str, verify: bool = True) -> str:
    response = api.post("/api/otc/clients", json={"name": name, "email": f"{name}@desk.example.com"})
    assert response.status_code == 201
    client_id = response.json()["id"]
    if verify:
        for verification_type in ("email", "phone", "document"):
            api.post(f"/api/compliance/clients/{client_id}/verify", json={"verification_type": verification_type})
    return client_id


class TestSystemEndpoints:
    """Test cases for root and system routes."""

    def test_health(self, api: TestClient) -> None:
        """Test health reports the store and rail breakers."""
        response = api.get("/system/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "otc-desk"
        assert body["store"] == "InMemoryStore"
        assert body["rails"]["crypto"] == "CLOSED"

    def test_root(self, api: TestClient) -> None:
        """Test the root endpoint points at health."""
        assert api.get("/").json()["health"] == "/system/health"

    def test_error_types(self, api: TestClient) -> None:
        """Test the error type counts are served."""
        response = api.get("/system/errors/types")

        assert response.status_code == 200
        assert response.json()["data"]["total_errors"] == 0


class TestQuoteEndpoints:
    """Test cases for pricing and quotes over HTTP."""

    def test_quote_and_accept(self, api: TestClient) -> None:
        """Test amounts are serialized as exact decimal strings."""
        client_id = register(api, "alpha")

        quote = api.post(
            "/api/otc/quotes",
            json={"client_id": client_id, "side": "buy", "base_currency": "BTC", "quote_currency": "USD", "amount": "1"},
        )
        assert quote.status_code == 201
        assert quote.json()["status"] == "quoted"
        assert quote.json()["quoted_price"] == "45270.00000000"

        deal = api.patch(f"/api/otc/quotes/{quote.json()['id']}/accept")
        assert deal.status_code == 200
        assert deal.json()["visibility"] == "private"
        assert deal.json()["quote_id"] == quote.json()["id"]

        again = api.patch(f"/api/otc/quotes/{quote.json()['id']}/accept")
        assert again.status_code == 409
        assert again.json()["error_code"] == "InvalidStateTransitionError"

    def test_pricing(self, api: TestClient) -> None:
        """Test indicative pricing for an institutional client."""
        response = api.post("/api/otc/clients", json={"name": "fund", "is_institutional": True})
        client_id = response.json()["id"]

        pricing = api.post(
            "/api/otc/pricing",
            json={
                "client_id": client_id,
                "side": "buy",
                "base_currency": "BTC",
                "quote_currency": "USD",
                "amount": "2",
                "trade_size_class": "large",
            },
        )

        assert pricing.status_code == 200
        assert pricing.json()["price"] == "45090.00000000"
        assert pricing.json()["validity_seconds"] == 300

    def test_amount_out_of_range(self, api: TestClient) -> None:
        """Test range violations are invalid requests."""
        client_id = register(api, "alpha")

        response = api.post(
            "/api/otc/quotes",
            json={"client_id": client_id, "side": "buy", "base_currency": "BTC", "quote_currency": "USD", "amount": "11"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_unknown_market(self, api: TestClient) -> None:
        """Test unpriced pairs are not found."""
        response = api.get("/api/markets/DOGE/USD")

        assert response.status_code == 404
        assert response.json()["error_code"] == "NoMarketDataError"
        assert api.get("/api/markets/btc/usd").json()["price"] == "45000"


class TestErrorMapping:
    """Test cases for domain error status codes."""

    def test_missing_deal(self, api: TestClient) -> None:
        """Test unknown records map to 404."""
        response = api.get("/api/otc/deals/DL-MISSING")

        assert response.status_code == 404
        assert response.json()["context"]["record_id"] == "DL-MISSING"

    def test_compliance_rejection(self, api: TestClient) -> None:
        """Test compliance rejections map to 403 with the reason."""
        client_id = register(api, "newbie", verify=False)

        response = api.post(
            "/api/otc/deals",
            json={
                "client_id": client_id,
                "side": "buy",
                "base_currency": "BTC",
                "quote_currency": "USD",
                "amount": "1",
                "price": "45000",
            },
        )

        assert response.status_code == 403
        assert response.json()["context"]["reason"] == "kyc_required"

    def test_invalid_block_trade(self, api: TestClient) -> None:
        """Test model validation failures map to 400."""
        client_id = register(api, "alpha")

        response = api.post(
            "/api/otc/block-trades",
            json={
                "buyer_id": client_id,
                "seller_id": client_id,
                "base_currency": "BTC",
                "quote_currency": "USD",
                "amount": "10",
                "price": "45000",
            },
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_unknown_instruction_method(self, api: TestClient) -> None:
        """Test unsupported rails map to 400."""
        client_id = register(api, "alpha")

        response = api.post(
            "/api/settlement/instructions",
            json={"client_id": client_id, "currency": "USD", "method": "cheque"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "UnsupportedRailError"

    def test_withdrawal_without_balance(self, api: TestClient) -> None:
        """Test insufficient balances map to 422."""
        client_id = register(api, "alpha")
        whitelisted = api.post(
            "/api/custody/whitelist",
            json={"client_id": client_id, "currency": "BTC", "address": BTC_ADDRESS},
        )
        assert whitelisted.status_code == 201

        response = api.post(
            "/api/custody/withdrawals",
            json={"client_id": client_id, "currency": "BTC", "amount": "0.1", "address": BTC_ADDRESS},
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "InsufficientBalanceError"

    def test_withdrawal_to_unlisted_address(self, api: TestClient) -> None:
        """Test withdrawals to addresses off the whitelist map to 403."""
        client_id = register(api, "alpha")

        response = api.post(
            "/api/custody/withdrawals",
            json={"client_id": client_id, "currency": "BTC", "amount": "0.1", "address": BTC_ADDRESS},
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "AddressNotWhitelistedError"

    def test_unauthorized_signer(self, api: TestClient) -> None:
        """Test signatures from unknown signers map to 403."""
        client_id = register(api, "alpha")
        deposit = api.post(
            "/api/custody/deposits",
            json={"client_id": client_id, "currency": "BTC", "amount": "2", "tx_hash": "0xabc", "confirmations": 6},
        )
        assert deposit.status_code == 201
        api.post("/api/custody/whitelist", json={"client_id": client_id, "currency": "BTC", "address": BTC_ADDRESS})
        withdrawal = api.post(
            "/api/custody/withdrawals",
            json={"client_id": client_id, "currency": "BTC", "amount": "1.5", "address": BTC_ADDRESS},
        )
        assert withdrawal.json()["status"] == "pending_signatures"
        withdrawal_id = withdrawal.json()["id"]

        response = api.post(
            f"/api/custody/withdrawals/{withdrawal_id}/signatures",
            json={"signer_id": "intern-7", "signature": "sig"},
        )
        signed = api.post(
            f"/api/custody/withdrawals/{withdrawal_id}/signatures",
            json={"signer_id": "OPS-1", "signature": "sig-1"},
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "UnauthorizedSignerError"
        assert response.json()["context"]["signer_id"] == "intern-7"
        assert signed.status_code == 200
        assert len(signed.json()["signatures"]) == 1


class TestSettlementEndpoints:
    """Test cases for the deal settlement flow over HTTP."""

    def test_settle_matched_deal(self, api: TestClient) -> None:
        """Test a matched deal settles through initiate and dual confirmation."""
        buyer = register(api, "buyer")
        seller = register(api, "seller")
        deal = api.post(
            "/api/otc/deals",
            json={
                "client_id": buyer,
                "side": "buy",
                "base_currency": "BTC",
                "quote_currency": "USD",
                "amount": "25",
                "price": "40000",
            },
        ).json()
        matched = api.patch(f"/api/otc/deals/{deal['id']}/match", json={"counterparty_id": seller})
        assert matched.json()["status"] == "matched"

        buyer_instr = api.post(
            "/api/settlement/instructions",
            json={"client_id": buyer, "currency": "USD", "method": "bank_wire", "account_number": "000123456789"},
        ).json()
        api.post("/api/custody/whitelist", json={"client_id": seller, "currency": "BTC", "address": BTC_ADDRESS})
        seller_instr = api.post(
            "/api/settlement/instructions",
            json={"client_id": seller, "currency": "BTC", "method": "crypto_wallet", "wallet_address": BTC_ADDRESS},
        ).json()

        response = api.post(
            "/api/settlement/settlements",
            json={
                "source_id": deal["id"],
                "buyer_instruction_id": buyer_instr["id"],
                "seller_instruction_id": seller_instr["id"],
            },
        )
        assert response.status_code == 201
        settlement = response.json()
        assert settlement["status"] == "processing"
        assert settlement["fees"]["total_fees"] == "1050.0005"

        api.post(f"/api/settlement/settlements/{settlement['id']}/confirm", json={"side": "buyer"})
        confirmed = api.post(f"/api/settlement/settlements/{settlement['id']}/confirm", json={"side": "seller"})

        assert confirmed.status_code == 200
        assert confirmed.json()["status"] in ("confirming", "completed")

    def test_credit_line_utilization(self, api: TestClient) -> None:
        """Test credit lines are created and reported."""
        client_id = register(api, "alpha")

        created = api.post(
            "/api/settlement/credit-lines",
            json={"client_id": client_id, "currency": "USD", "credit_limit": "100000"},
        )
        utilization = api.get(f"/api/settlement/credit/{client_id}/utilization")

        assert created.status_code == 201
        assert created.json()["available_credit"] == "100000"
        assert utilization.json()["line_count"] == 1
