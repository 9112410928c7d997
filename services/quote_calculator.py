"""
Quote Calculator

Pure Decimal pricing for both ramp directions. Fiat amounts are quantized to
0.01 and token amounts to 8 places, both ROUND_HALF_UP, so a quote is
reproducible given the same rate table and fee schedule.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Any, Optional, Union

from config import Config
from models import SettlementDirection
from services.settlement_errors import ValidationError

logger = logging.getLogger(__name__)

FIAT_QUANT = Decimal("0.01")
TOKEN_QUANT = Decimal("0.00000001")
OCTAS_PER_NATIVE = Decimal("100000000")


def quantize_fiat(value: Decimal) -> Decimal:
    return value.quantize(FIAT_QUANT, rounding=ROUND_HALF_UP)


def quantize_token(value: Decimal) -> Decimal:
    return value.quantize(TOKEN_QUANT, rounding=ROUND_HALF_UP)


def to_decimal(value: Union[str, int, float, Decimal], field: str = "amount") -> Decimal:
    """Parse user input into a finite Decimal or raise ValidationError"""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required and must be numeric")
    try:
        # str() so floats keep their printed value rather than binary noise
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be numeric")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


@dataclass
class Quote:
    """Priced quote for one settlement"""
    direction: str
    asset_type: str
    fiat_currency: str
    fiat_amount: Decimal
    token_amount: Decimal
    conversion_rate: Decimal
    platform_fee: Decimal
    gateway_fee: Decimal
    network_fee: Decimal
    gross_fiat: Decimal
    net_fiat: Decimal
    total_payable: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: (str(value) if isinstance(value, Decimal) else value)
            for key, value in asdict(self).items()
        }


class QuoteCalculator:
    """Prices on-ramp orders and off-ramp withdrawals from Config rate/fee tables"""

    def __init__(
        self,
        onramp_rates: Optional[Dict[str, Decimal]] = None,
        offramp_rates: Optional[Dict[str, Decimal]] = None,
    ):
        self.onramp_rates = dict(onramp_rates if onramp_rates is not None else Config.ONRAMP_RATES)
        self.offramp_rates = dict(offramp_rates if offramp_rates is not None else Config.OFFRAMP_RATES)

    @staticmethod
    def _clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
        return max(low, min(high, value))

    def _rate(self, direction: SettlementDirection, asset_type: str) -> Decimal:
        if not asset_type or not isinstance(asset_type, str):
            raise ValidationError("asset_type is required")
        asset = asset_type.upper()
        if asset not in Config.ASSETS:
            raise ValidationError(f"Unsupported asset type: {asset_type}")
        table = self.onramp_rates if direction == SettlementDirection.ON_RAMP else self.offramp_rates
        if asset not in table:
            raise ValidationError(f"{asset} is not enabled for {direction.value}")
        return Decimal(str(table[asset]))

    def quote_onramp(self, fiat_amount, asset_type: str, network_fee: Decimal = Decimal("0")) -> Quote:
        """
        token = fiat x rate (tokens per fiat unit).

        The platform fee (percentage of gross, clamped) and gateway fee are
        charged on top of the gross amount, so the token amount never
        shrinks by the fee.
        """
        gross = to_decimal(fiat_amount, "amount")
        if gross <= 0:
            raise ValidationError("amount must be positive")
        if gross < Config.ONRAMP_MIN_FIAT:
            raise ValidationError(f"Minimum amount is {Config.ONRAMP_MIN_FIAT} {Config.FIAT_CURRENCY}")
        if gross > Config.ONRAMP_MAX_FIAT:
            raise ValidationError(f"Maximum amount is {Config.ONRAMP_MAX_FIAT} {Config.FIAT_CURRENCY}")

        rate = self._rate(SettlementDirection.ON_RAMP, asset_type)
        gross = quantize_fiat(gross)
        token_amount = quantize_token(gross * rate)
        if token_amount <= 0:
            raise ValidationError("amount is too small to purchase any tokens")

        platform_fee = quantize_fiat(self._clamp(
            gross * Config.ONRAMP_FEE_PERCENT / Decimal("100"),
            Config.ONRAMP_FEE_MIN,
            Config.ONRAMP_FEE_MAX,
        ))
        gateway_fee = quantize_fiat(Config.ONRAMP_GATEWAY_FEE)
        network_fee = quantize_fiat(to_decimal(network_fee, "network_fee"))

        return Quote(
            direction=SettlementDirection.ON_RAMP.value,
            asset_type=asset_type.upper(),
            fiat_currency=Config.FIAT_CURRENCY,
            fiat_amount=gross,
            token_amount=token_amount,
            conversion_rate=rate,
            platform_fee=platform_fee,
            gateway_fee=gateway_fee,
            network_fee=network_fee,
            gross_fiat=gross,
            net_fiat=gross,
            total_payable=gross + platform_fee + gateway_fee + network_fee,
        )

    def quote_offramp(self, token_amount, asset_type: str) -> Quote:
        """gross fiat = token x rate (fiat per token); net = gross - clamped platform fee"""
        tokens = to_decimal(token_amount, "amount")
        if tokens <= 0:
            raise ValidationError("amount must be positive")
        if tokens < Config.OFFRAMP_MIN_TOKEN:
            raise ValidationError(f"Minimum withdrawal is {Config.OFFRAMP_MIN_TOKEN} {asset_type}")
        if tokens > Config.OFFRAMP_MAX_TOKEN:
            raise ValidationError(f"Maximum withdrawal is {Config.OFFRAMP_MAX_TOKEN} {asset_type}")

        rate = self._rate(SettlementDirection.OFF_RAMP, asset_type)
        tokens = quantize_token(tokens)
        gross = quantize_fiat(tokens * rate)
        platform_fee = quantize_fiat(self._clamp(
            gross * Config.OFFRAMP_FEE_PERCENT / Decimal("100"),
            Config.OFFRAMP_FEE_MIN,
            Config.OFFRAMP_FEE_MAX,
        ))
        net = gross - platform_fee
        if net < Config.OFFRAMP_MIN_NET_PAYOUT:
            raise ValidationError(
                f"Net payout {net} {Config.FIAT_CURRENCY} is below the minimum of "
                f"{Config.OFFRAMP_MIN_NET_PAYOUT} {Config.FIAT_CURRENCY}"
            )

        return Quote(
            direction=SettlementDirection.OFF_RAMP.value,
            asset_type=asset_type.upper(),
            fiat_currency=Config.FIAT_CURRENCY,
            fiat_amount=gross,
            token_amount=tokens,
            conversion_rate=rate,
            platform_fee=platform_fee,
            gateway_fee=Decimal("0.00"),
            network_fee=Decimal("0.00"),
            gross_fiat=gross,
            net_fiat=net,
            total_payable=net,
        )

    def quote(self, direction: Union[SettlementDirection, str], amount, asset_type: str) -> Quote:
        try:
            direction = SettlementDirection(direction) if isinstance(direction, str) else direction
        except ValueError:
            raise ValidationError(f"Unknown direction: {direction}")
        if direction == SettlementDirection.ON_RAMP:
            return self.quote_onramp(amount, asset_type)
        return self.quote_offramp(amount, asset_type)

    def estimate_network_fee(self, asset_type: str, gas_unit_price: int) -> Dict[str, Any]:
        """
        Network fee estimate for one transfer of asset_type.

        Fee in native token = unit price x estimated gas units / 1e8, scaled
        up for non-native assets; the fiat figure uses the native on-ramp rate.
        """
        asset = (asset_type or "").upper()
        if asset not in Config.ASSETS:
            raise ValidationError(f"Unsupported asset type: {asset_type}")

        units = Decimal(Config.GAS_ESTIMATE_UNITS)
        if asset != Config.NATIVE_ASSET:
            units = units * Config.GAS_ESTIMATE_NON_NATIVE_MULTIPLIER
        native_fee = quantize_token(Decimal(int(gas_unit_price)) * units / OCTAS_PER_NATIVE)

        native_rate = self.onramp_rates.get(Config.NATIVE_ASSET)
        fiat_fee = quantize_fiat(native_fee / native_rate) if native_rate else None
        return {
            "asset_type": asset,
            "gas_unit_price": int(gas_unit_price),
            "estimated_gas_units": int(units),
            "native_fee": str(native_fee),
            "native_asset": Config.NATIVE_ASSET,
            "fiat_fee": str(fiat_fee) if fiat_fee is not None else None,
            "fiat_currency": Config.FIAT_CURRENCY,
        }

    def rates(self) -> Dict[str, Any]:
        """Public rate table"""
        return {
            "fiat_currency": Config.FIAT_CURRENCY,
            "onramp": {asset: str(rate) for asset, rate in self.onramp_rates.items()},
            "offramp": {asset: str(rate) for asset, rate in self.offramp_rates.items()},
        }

    def limits(self) -> Dict[str, Any]:
        """Public limits and fee schedule"""
        return {
            "onramp": {
                "min_fiat": str(Config.ONRAMP_MIN_FIAT),
                "max_fiat": str(Config.ONRAMP_MAX_FIAT),
                "fee_percent": str(Config.ONRAMP_FEE_PERCENT),
                "fee_min": str(Config.ONRAMP_FEE_MIN),
                "fee_max": str(Config.ONRAMP_FEE_MAX),
                "supported_assets": sorted(self.onramp_rates),
            },
            "offramp": {
                "min_token": str(Config.OFFRAMP_MIN_TOKEN),
                "max_token": str(Config.OFFRAMP_MAX_TOKEN),
                "fee_percent": str(Config.OFFRAMP_FEE_PERCENT),
                "fee_min": str(Config.OFFRAMP_FEE_MIN),
                "fee_max": str(Config.OFFRAMP_FEE_MAX),
                "min_net_payout": str(Config.OFFRAMP_MIN_NET_PAYOUT),
                "supported_assets": sorted(self.offramp_rates),
            },
        }

    def fiat_value(self, token_amount: Decimal, asset_type: str) -> Optional[Decimal]:
        """
        Indicative fiat value of a token holding.

        Uses the off-ramp rate when the asset has one, otherwise the inverse of
        the on-ramp rate. None when the asset is not priced in either direction.
        """
        asset = (asset_type or "").upper()
        if asset in self.offramp_rates:
            return quantize_fiat(token_amount * Decimal(str(self.offramp_rates[asset])))
        onramp_rate = Decimal(str(self.onramp_rates.get(asset, "0")))
        if onramp_rate > 0:
            return quantize_fiat(token_amount / onramp_rate)
        return None

    def supported_tokens(self) -> Dict[str, Any]:
        tokens = {}
        for asset, entry in sorted(Config.ASSETS.items()):
            onramp_rate = self.onramp_rates.get(asset)
            offramp_rate = self.offramp_rates.get(asset)
            tokens[asset] = {
                "symbol": asset,
                "decimals": entry.get("decimals"),
                "type": "native" if asset == Config.NATIVE_ASSET else "token",
                "on_ledger_transfer": bool(entry.get("transfer_path")),
                "onramp_rate": str(onramp_rate) if onramp_rate is not None else None,
                "offramp_rate": str(offramp_rate) if offramp_rate is not None else None,
                "network": Config.LEDGER_NETWORK,
            }
        return {"fiat_currency": Config.FIAT_CURRENCY, "tokens": tokens, "count": len(tokens)}
