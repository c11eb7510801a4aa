# tests/test_x402_challenge.py
"""
Unit tests for the x402 challenge model and codec.
"""
import hashlib
import time
from decimal import Decimal

import pytest

from app.x402.challenge import (
    Currency,
    EXPOSED_CHALLENGE_HEADERS,
    PaymentChallenge,
    canonical_route,
    canonicalize_path,
    chain_id_for_network,
    from_base_units,
    mint_nonce,
    replay_key,
    split_route,
    to_base_units,
)
from app.x402.errors import ChallengeParseError, UnsupportedCurrencyError


def make_challenge(**overrides) -> PaymentChallenge:
    data = {
        "amount": "1.0",
        "currency": "USDC",
        "payTo": "0x" + "11" * 20,
        "merchantId": "merchant-1",
        "facilitatorUrl": "https://facilitator.example.com",
        "chainId": 338,
        "route": "GET /premium",
        "nonce": "n1",
        "expiresAt": int(time.time()) + 300,
        "network": "cronos-testnet",
        "description": "Premium market data",
    }
    data.update(overrides)
    return PaymentChallenge.model_validate(data)


class TestCanonicalizePath:
    """Test the single path canonicalization."""

    def test_strips_trailing_slash(self):
        """Trailing slash is removed."""
        assert canonicalize_path("/premium/") == "/premium"

    def test_strips_query_and_fragment(self):
        """Query string and fragment are dropped."""
        assert canonicalize_path("/premium?x=1&y=2") == "/premium"
        assert canonicalize_path("/premium#top") == "/premium"

    def test_forces_leading_slash(self):
        """A missing leading slash is added."""
        assert canonicalize_path("premium") == "/premium"

    def test_collapses_repeated_slashes(self):
        """Repeated slashes collapse to one."""
        assert canonicalize_path("//api//premium//") == "/api/premium"

    def test_root_stays_root(self):
        """Root path and empty input map to '/'."""
        assert canonicalize_path("/") == "/"
        assert canonicalize_path("") == "/"

    def test_canonical_route(self):
        """Route string is upper-case method plus canonical path."""
        assert canonical_route("get", "/premium/?a=b") == "GET /premium"

    def test_split_route(self):
        """split_route is the inverse of canonical_route."""
        assert split_route("post /native/") == ("POST", "/native")

    def test_split_route_rejects_garbage(self):
        """A route without a path is malformed."""
        with pytest.raises(ValueError):
            split_route("GET")


class TestReplayKey:
    """Test replay key derivation."""

    def test_matches_sha256_of_tuple(self):
        """Key is sha256 of merchant:METHOD:/path:nonce."""
        expected = hashlib.sha256(b"merchant-1:GET:/premium:n1").hexdigest()
        assert replay_key("merchant-1", "GET", "/premium", "n1") == expected

    def test_path_variants_share_key(self):
        """Equivalent paths produce the same key."""
        assert replay_key("m", "get", "/premium/", "n1") == replay_key("m", "GET", "premium?x=1", "n1")

    def test_nonce_changes_key(self):
        """A different nonce is a different key."""
        assert replay_key("m", "GET", "/premium", "n1") != replay_key("m", "GET", "/premium", "n2")


class TestNonce:
    """Test nonce minting."""

    def test_nonce_is_128_bit_hex(self):
        """Nonce is 32 hex characters."""
        nonce = mint_nonce()
        assert len(nonce) == 32
        int(nonce, 16)

    def test_nonces_are_unique(self):
        """Nonces never repeat."""
        assert len({mint_nonce() for _ in range(200)}) == 200


class TestBaseUnits:
    """Test decimal to smallest unit conversion."""

    def test_usdc_six_decimals(self):
        """1.5 USDC is 1,500,000 units."""
        assert to_base_units("1.5", Currency.USDC) == 1_500_000

    def test_cro_eighteen_decimals(self):
        """CRO amounts keep 18 decimals of precision."""
        assert to_base_units("0.000000000000000001", Currency.CRO) == 1
        assert to_base_units("2", Currency.CRO) == 2 * 10 ** 18

    def test_rejects_excess_precision(self):
        """More decimals than the asset supports are refused."""
        with pytest.raises(ValueError, match="exceeds 6 decimals"):
            to_base_units("0.0000001", Currency.USDC)

    def test_rejects_non_positive(self):
        """Zero and negative amounts are refused."""
        with pytest.raises(ValueError):
            to_base_units("0", Currency.USDC)
        with pytest.raises(ValueError):
            to_base_units("-1", Currency.USDC)

    def test_rejects_floats_and_garbage(self):
        """Floats and non-numeric strings are refused."""
        with pytest.raises(ValueError):
            to_base_units(1.5, Currency.USDC)
        with pytest.raises(ValueError):
            to_base_units("abc", Currency.USDC)

    def test_from_base_units(self):
        """Units convert back to a decimal amount."""
        assert from_base_units(1_500_000, Currency.USDC) == Decimal("1.5")

    def test_large_cro_amounts_are_exact(self):
        """Amounts beyond 28 significant digits are neither rounded nor truncated."""
        amount = "123456789012.123456789012345678"
        units = 123456789012123456789012345678

        assert to_base_units(amount, Currency.CRO) == units
        assert from_base_units(units, Currency.CRO) == Decimal(amount)

    def test_large_cro_amount_with_excess_precision_rejected(self):
        with pytest.raises(ValueError, match="exceeds 18 decimals"):
            to_base_units("123456789012.1234567890123456789", Currency.CRO)

    def test_chain_id_for_network(self):
        """Known networks map to their chain ids."""
        assert chain_id_for_network("cronos-mainnet") == 25
        assert chain_id_for_network("cronos-testnet") == 338
        with pytest.raises(ValueError):
            chain_id_for_network("ethereum")


class TestChallengeHeaders:
    """Test the header transport."""

    def test_to_headers_contains_all_fields(self):
        """Every challenge field is encoded."""
        headers = make_challenge().to_headers()

        assert headers["X-Payment-Required"] == "true"
        assert headers["X-Payment-Amount"] == "1.0"
        assert headers["X-Payment-Currency"] == "USDC"
        assert headers["X-Payment-Network"] == "cronos-testnet"
        assert headers["X-Payment-PayTo"] == "0x" + "11" * 20
        assert headers["X-Merchant-ID"] == "merchant-1"
        assert headers["X-Facilitator-URL"] == "https://facilitator.example.com"
        assert headers["X-Payment-Description"] == "Premium market data"
        assert headers["X-Nonce"] == "n1"
        assert headers["X-Chain-ID"] == "338"
        assert headers["X-Route"] == "GET /premium"
        assert "X-Payment-Expires" in headers

    def test_headers_parse_back_case_insensitively(self):
        """Lower-cased header names parse to the same challenge."""
        challenge = make_challenge()
        headers = {k.lower(): v for k, v in challenge.to_headers().items()}

        assert PaymentChallenge.from_headers(headers) == challenge

    @pytest.mark.parametrize("missing", ["X-Payment-Amount", "X-Nonce", "X-Route", "X-Chain-ID", "X-Payment-PayTo"])
    def test_missing_header_fails_closed(self, missing):
        """Any missing required header is an error, never a default."""
        headers = make_challenge().to_headers()
        del headers[missing]

        with pytest.raises(ChallengeParseError, match=missing):
            PaymentChallenge.from_headers(headers)

    def test_malformed_chain_id_fails(self):
        """Non-numeric chain id is rejected."""
        headers = make_challenge().to_headers()
        headers["X-Chain-ID"] = "cronos"

        with pytest.raises(ChallengeParseError, match="chainId"):
            PaymentChallenge.from_headers(headers)

    def test_protocol_header_set_parses(self):
        """The eleven challenge headers are enough; expiry is optional."""
        headers = {
            "X-Payment-Required": "true",
            "X-Payment-Amount": "1.0",
            "X-Payment-Currency": "USDC",
            "X-Payment-Network": "cronos-testnet",
            "X-Payment-PayTo": "0x" + "11" * 20,
            "X-Merchant-ID": "merchant-1",
            "X-Facilitator-URL": "https://facilitator.example.com",
            "X-Payment-Description": "Premium market data",
            "X-Nonce": "n1",
            "X-Chain-ID": "338",
            "X-Route": "GET /premium",
        }

        challenge = PaymentChallenge.from_headers(headers)

        assert challenge.expires_at is None
        assert challenge.is_expired() is False
        assert challenge.facilitator_url == "https://facilitator.example.com"
        assert challenge.to_headers() == headers

    def test_unknown_currency_is_unsupported(self):
        """A complete challenge in an unknown asset is reported as such."""
        headers = make_challenge().to_headers()
        headers["X-Payment-Currency"] = "ETH"

        with pytest.raises(UnsupportedCurrencyError) as exc_info:
            PaymentChallenge.from_headers(headers)

        assert exc_info.value.currency == "ETH"
        assert isinstance(exc_info.value, ChallengeParseError)

    def test_exposed_headers_cover_challenge(self):
        """Every header a challenge emits can be exposed to browsers."""
        assert set(make_challenge().to_headers()) <= set(EXPOSED_CHALLENGE_HEADERS)


class TestChallengeBody:
    """Test the JSON body transport."""

    def test_body_shape(self):
        """Body carries error, message and a camelCase paymentRequest."""
        body = make_challenge().to_body()

        assert body["error"] == "PAYMENT_REQUIRED"
        assert body["message"]
        request = body["paymentRequest"]
        assert request["merchantId"] == "merchant-1"
        assert request["payTo"] == "0x" + "11" * 20
        assert request["chainId"] == 338
        assert request["nonce"] == "n1"
        assert request["route"] == "GET /premium"
        assert request["facilitatorUrl"] == "https://facilitator.example.com"

    def test_body_parses_back(self):
        """A body produced by to_body parses to the same challenge."""
        challenge = make_challenge()
        assert PaymentChallenge.from_body(challenge.to_body()) == challenge

    def test_minimal_body_parses(self):
        """A paymentRequest with only the required fields is a challenge."""
        body = {
            "error": "PAYMENT_REQUIRED",
            "message": "Payment required",
            "paymentRequest": {
                "chainId": 338,
                "merchantId": "merchant-1",
                "amount": "1.0",
                "currency": "USDC",
                "payTo": "0x" + "11" * 20,
                "nonce": "n1",
                "route": "GET /premium",
            },
        }

        challenge = PaymentChallenge.from_body(body)

        assert challenge.amount_units == 1_000_000
        assert challenge.facilitator_url is None
        assert challenge.expires_at is None

    def test_body_without_nonce_is_rejected(self):
        """The client never invents a nonce."""
        body = make_challenge().to_body()
        del body["paymentRequest"]["nonce"]

        with pytest.raises(ChallengeParseError, match="nonce"):
            PaymentChallenge.from_body(body)

    def test_body_without_payment_request(self):
        """A 402 body without paymentRequest is not a challenge."""
        with pytest.raises(ChallengeParseError):
            PaymentChallenge.from_body({"error": "PAYMENT_REQUIRED"})
        with pytest.raises(ChallengeParseError):
            PaymentChallenge.from_body(None)

    def test_body_missing_amount_fails(self):
        """Missing amount is an error."""
        body = make_challenge().to_body()
        del body["paymentRequest"]["amount"]

        with pytest.raises(ChallengeParseError, match="amount"):
            PaymentChallenge.from_body(body)


class TestChallengeProperties:
    """Test derived challenge values."""

    def test_payment_key(self):
        """Agent payment key is merchant:route:nonce."""
        assert make_challenge().payment_key == "merchant-1:GET /premium:n1"

    def test_amount_units(self):
        """Amount converts to smallest units of its currency."""
        assert make_challenge(amount="0.25").amount_units == 250_000

    def test_is_expired(self):
        """Expiry compares against the given clock."""
        challenge = make_challenge(expiresAt=1000)
        assert challenge.is_expired(now=1000) is True
        assert challenge.is_expired(now=999) is False

    def test_non_positive_amount_rejected(self):
        """A challenge for nothing is invalid."""
        with pytest.raises(ValueError):
            make_challenge(amount="0")
