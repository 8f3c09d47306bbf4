"""
Tests for the value types, OCC symbols and calendar helpers.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from volsurf.exceptions import InvalidPricingInput
from volsurf.models import (
    ContractType,
    OptionQuote,
    PricingInput,
    as_of_bucket,
    expiry_datetime,
    occ_symbol,
    parse_occ_symbol,
    quotes_to_frame,
    time_to_expiry,
)

TS = datetime(2024, 1, 2, 15, 0, 30, tzinfo=timezone.utc)


class TestContractType:

    @pytest.mark.parametrize("raw, expected", [
        ("call", ContractType.CALL), ("C", ContractType.CALL), (" Put ", ContractType.PUT),
        ("p", ContractType.PUT), (ContractType.CALL, ContractType.CALL),
    ])
    def test_parse(self, raw, expected):
        assert ContractType.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            ContractType.parse("straddle")


class TestOccSymbols:

    def test_format(self):
        assert occ_symbol("AAPL", date(2021, 1, 15), "call", 125) == "AAPL210115C00125000"
        assert occ_symbol("spy", date(2024, 3, 15), "put", 472.5) == "SPY240315P00472500"

    def test_round_trip(self):
        for strike in (0.5, 1.0, 99.5, 472.5, 4100.0):
            for kind in (ContractType.CALL, ContractType.PUT):
                sym = occ_symbol("SPX", date(2025, 6, 20), kind, strike)
                assert parse_occ_symbol(sym) == ("SPX", date(2025, 6, 20), kind, strike)

    @pytest.mark.parametrize("bad", ["", "AAPL", "AAPL210115X00125000", "AAPL2101C00125000"])
    def test_malformed(self, bad):
        with pytest.raises(ValueError):
            parse_occ_symbol(bad)


class TestCalendar:

    def test_expiry_at_1600_utc(self):
        assert expiry_datetime(date(2024, 1, 19)) == datetime(2024, 1, 19, 16, tzinfo=timezone.utc)

    def test_time_to_expiry_act_365_25(self):
        as_of = datetime(2024, 1, 19, 16, tzinfo=timezone.utc) - timedelta(days=365.25)
        assert time_to_expiry(date(2024, 1, 19), as_of) == pytest.approx(1.0)

    def test_expired_is_non_positive(self):
        late = datetime(2024, 1, 19, 16, 30, tzinfo=timezone.utc)
        assert time_to_expiry(date(2024, 1, 19), late) < 0

    def test_bucket_floors(self):
        assert as_of_bucket(TS, 60) == datetime(2024, 1, 2, 15, 0, tzinfo=timezone.utc)
        assert as_of_bucket(TS + timedelta(seconds=29), 60) == as_of_bucket(TS, 60)
        assert as_of_bucket(TS + timedelta(seconds=30), 60) != as_of_bucket(TS, 60)

    def test_naive_timestamps_are_utc(self):
        assert as_of_bucket(TS.replace(tzinfo=None), 60) == as_of_bucket(TS, 60)

    def test_bucket_width_positive(self):
        with pytest.raises(ValueError):
            as_of_bucket(TS, 0)


class TestOptionQuote:

    def make(self, **overrides):
        fields = dict(
            underlying="SPY", contract_symbol="SPY240119C00470000", strike=470.0,
            expiration=date(2024, 1, 19), contract_type="call", bid=5.1, ask=5.3, timestamp=TS,
        )
        fields.update(overrides)
        return OptionQuote(**fields)

    def test_mid_and_spread(self):
        q = self.make()
        assert q.contract_type is ContractType.CALL
        assert q.mid == pytest.approx(5.2)
        assert q.spread == pytest.approx(0.2)
        assert q.has_valid_market

    def test_crossed_is_constructible_but_unpriceable(self):
        q = self.make(bid=5.5, ask=5.3)
        assert q.is_crossed
        assert not q.has_valid_market
        assert q.mid is None

    @pytest.mark.parametrize("bid, ask", [(0.0, 0.05), (None, 1.0), (0.0, 0.0)])
    def test_empty_markets(self, bid, ask):
        q = self.make(bid=bid, ask=ask)
        assert not q.has_valid_market
        assert q.mid is None

    @pytest.mark.parametrize("strike", [0.0, -1.0, float("nan")])
    def test_strike_must_be_positive(self, strike):
        with pytest.raises(InvalidPricingInput) as exc_info:
            self.make(strike=strike)
        assert exc_info.value.field == "strike"

    def test_negative_bid_rejected(self):
        with pytest.raises(InvalidPricingInput):
            self.make(bid=-0.1)

    def test_expiration_before_timestamp_rejected(self):
        with pytest.raises(InvalidPricingInput):
            self.make(expiration=date(2024, 1, 1))

    def test_immutable(self):
        q = self.make()
        with pytest.raises(AttributeError):
            q.bid = 1.0

    def test_from_occ(self):
        q = OptionQuote.from_occ("spy240119p00465000", 1.2, 1.3, TS)
        assert q.underlying == "SPY"
        assert q.contract_symbol == "SPY240119P00465000"
        assert q.strike == 465.0
        assert q.contract_type is ContractType.PUT
        assert q.expiration == date(2024, 1, 19)

    def test_quotes_to_frame(self):
        df = quotes_to_frame([self.make(), self.make(strike=475.0, bid=None)])
        assert list(df.columns) == ["underlying", "contract_symbol", "option_type", "strike", "expiry",
                                    "bid", "ask", "mid", "bid_size", "ask_size", "timestamp"]
        assert len(df) == 2
        assert df["option_type"].iloc[0] == "call"


class TestPricingInput:

    def test_from_quote(self):
        q = OptionQuote.from_occ("SPY240119C00470000", 5.1, 5.3, TS)
        pi = PricingInput.from_quote(q, spot=472.0, risk_free_rate=0.05, as_of=TS)
        assert pi.observed_price == pytest.approx(5.2)
        assert pi.time_to_expiry == pytest.approx(time_to_expiry(date(2024, 1, 19), TS))

    def test_expired_quote(self):
        q = OptionQuote.from_occ("SPY240119C00470000", 5.1, 5.3, TS)
        after_expiry = datetime(2024, 1, 19, 17, tzinfo=timezone.utc)
        with pytest.raises(InvalidPricingInput):
            PricingInput.from_quote(q, 472.0, 0.05, after_expiry)

    def test_no_market(self):
        q = OptionQuote.from_occ("SPY240119C00470000", 0.0, 5.3, TS)
        with pytest.raises(InvalidPricingInput):
            PricingInput.from_quote(q, 472.0, 0.05, TS)
