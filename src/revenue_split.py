"""
Mycelix Music - Revenue Split Calculator

Turns a strategy configuration (splits, pricing, programmable offers) and
a payment amount into per-recipient payouts.

Key rules:
- Split percentages must sum to exactly 100
- Payouts always sum exactly to the gross amount
- Integer (wei) amounts use integer arithmetic; decimal amounts keep their
  own precision (``"10.00"`` pays out in cents)
- Shares are rounded down; the remainder goes to the primary recipient
- Programmable offers are evaluated in list order and the first match wins

Also provides the strategy catalog (protocol fees per on-chain strategy),
basis-point split previews, preset split templates, canonical config
hashing for publishing, and the module lift simulation used by the
preview endpoint.
"""

import hashlib
import json
import math
import operator
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Any

from errors import NotFoundError, ValidationError

# =============================================================================
# Constants
# =============================================================================

TOTAL_PERCENT = Decimal("100")
TOTAL_BPS = 10000

# Wei amounts exceed the default 28-digit context
_PRECISION = 100

STRATEGY_EXPORT_KIND = "mycelix.strategy.config"
STRATEGY_EXPORT_VERSION = 1

# Fields that are never part of the hashed config body
_UNHASHED_FIELDS = ("hash", "admin_signature", "adminSignature")

DEFAULT_DYNAMIC_MAX = 0.2
DEFAULT_DYNAMIC_CURVE = 15.0
DEFAULT_LOYALTY_MAX = 0.08

PREVIEW_MIN_DAYS = 1
PREVIEW_MAX_DAYS = 90
PREVIEW_DEFAULT_DAYS = 30


# =============================================================================
# Enums
# =============================================================================


class PaymentModel(Enum):
    """How listeners pay for a song."""

    PAY_PER_STREAM = "pay_per_stream"
    SUBSCRIPTION = "subscription"
    PAY_PER_DOWNLOAD = "pay_per_download"
    NFT_GATED = "nft_gated"
    STAKING_GATED = "staking_gated"
    TOKEN_TIP = "token_tip"
    GIFT_ECONOMY = "gift_economy"
    TIME_BARTER = "time_barter"
    PATRONAGE = "patronage"
    FREEMIUM = "freemium"
    PAY_WHAT_YOU_WANT = "pay_what_you_want"
    AUCTION = "auction"

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


class PaymentType(Enum):
    """On-chain payment type emitted by the router (uint8 0-4)."""

    STREAM = 0
    DOWNLOAD = 1
    TIP = 2
    PATRONAGE = 3
    NFT_ACCESS = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "PaymentType":
        """Accept the numeric code or the lowercase label."""
        if isinstance(value, PaymentType):
            return value
        if isinstance(value, bool):
            raise ValidationError(f"Invalid payment type: {value!r}")
        if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
            try:
                return cls(int(value))
            except ValueError:
                raise ValidationError(f"Invalid payment type: {value!r}")
        if isinstance(value, str):
            label = value.strip().lower()
            for member in cls:
                if member.label == label:
                    return member
        raise ValidationError(f"Invalid payment type: {value!r}")


# =============================================================================
# Errors
# =============================================================================


class SplitValidationError(ValidationError):
    """Raised when a split or strategy configuration is invalid."""
    pass


# =============================================================================
# Amount helpers
# =============================================================================


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Convert a JSON number or numeric string to a finite Decimal."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    try:
        result = Decimal(value) if isinstance(value, (int, Decimal)) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def format_amount(value: int | Decimal | float) -> str:
    """Render an amount without exponent notation (``7.01``, ``70``)."""
    if isinstance(value, int):
        return str(value)
    d = value if isinstance(value, Decimal) else Decimal(str(value))
    return format(d, "f")


def _quantum_for(amount: Decimal) -> Decimal:
    exponent = amount.as_tuple().exponent
    return Decimal(1).scaleb(min(exponent, 0))


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class Split:
    """One recipient share of a payment, as a percentage."""

    role: str
    pct: Decimal
    recipient: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"role": self.role, "pct": float(self.pct)}
        if self.recipient:
            result["recipient"] = self.recipient
        return result


@dataclass
class PricingConfig:
    """Base price and optional module tuning knobs."""

    base_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    loyalty_multiplier: Decimal = field(default_factory=lambda: Decimal("1"))
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "baseAmount": float(self.base_amount),
            "loyaltyMultiplier": float(self.loyalty_multiplier),
        }


_CONDITION_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(>=|<=|==|!=|>|<)\s*(.+?)\s*$")
_BARE_KEY_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*$")

_OPERATORS = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}


def _literal(raw: str) -> Any:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return Decimal(raw)
    except InvalidOperation:
        return raw


def _lookup(context: dict[str, Any], key: str) -> Any:
    value: Any = context
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


@dataclass
class OfferRule:
    """
    A programmable offer: when ``condition`` matches the listener context,
    ``action`` adjusts the price.

    Conditions:
        always | *             matches every context
        <key>                  context value is truthy
        <key> <op> <value>     op is one of >= > <= < == !=

    Actions:
        loyalty | apply_loyalty_multiplier    base * loyaltyMultiplier
        multiplier:<x>                        base * x
        discount:<pct>                        base * (1 - pct/100)
        price:<x>                             fixed price x
        free                                  0
    """

    title: str
    condition: str
    action: str

    def __post_init__(self):
        self._check_condition()
        self._check_action()

    def _check_condition(self) -> None:
        cond = self.condition.strip()
        if cond in ("always", "*"):
            return
        if _BARE_KEY_RE.match(cond):
            return
        match = _CONDITION_RE.match(cond)
        if not match:
            raise SplitValidationError(f"Offer '{self.title}' has a malformed condition: {self.condition!r}")

        _, op, raw = match.groups()
        expected = _literal(raw)
        if isinstance(expected, Decimal):
            if not expected.is_finite():
                raise SplitValidationError(f"Offer '{self.title}' compares against a non-finite number")
        elif op not in ("==", "!="):
            raise SplitValidationError(f"Offer '{self.title}' can only use {op} with a number")

    def _check_action(self) -> None:
        name, _, arg = self.action.strip().partition(":")
        name = name.strip().lower()
        if name in ("loyalty", "apply_loyalty_multiplier", "free"):
            if arg:
                raise SplitValidationError(f"Offer '{self.title}' action '{name}' takes no argument")
            return
        if name not in ("multiplier", "discount", "price"):
            raise SplitValidationError(f"Offer '{self.title}' has an unknown action: {self.action!r}")
        try:
            value = Decimal(arg.strip())
        except InvalidOperation:
            raise SplitValidationError(f"Offer '{self.title}' action '{name}' needs a numeric argument")
        if not value.is_finite() or value < 0:
            raise SplitValidationError(f"Offer '{self.title}' action '{name}' needs a non-negative argument")
        if name == "discount" and value > TOTAL_PERCENT:
            raise SplitValidationError(f"Offer '{self.title}' discount cannot exceed 100%")

    def matches(self, context: dict[str, Any]) -> bool:
        cond = self.condition.strip()
        if cond in ("always", "*"):
            return True

        bare = _BARE_KEY_RE.match(cond)
        if bare:
            return bool(_lookup(context, bare.group(1)))

        key, op, raw = _CONDITION_RE.match(cond).groups()
        actual = _lookup(context, key)
        if actual is None:
            return False
        expected = _literal(raw)

        if isinstance(expected, Decimal) and not isinstance(actual, bool):
            try:
                actual = to_decimal(actual, key)
            except ValidationError:
                return False
        elif isinstance(expected, str):
            actual = str(actual)
        try:
            return _OPERATORS[op](actual, expected)
        except (TypeError, InvalidOperation):
            return False

    def apply(self, pricing: PricingConfig) -> Decimal:
        name, _, arg = self.action.strip().partition(":")
        name = name.strip().lower()
        base = pricing.base_amount
        if name in ("loyalty", "apply_loyalty_multiplier"):
            return base * pricing.loyalty_multiplier
        if name == "free":
            return Decimal("0")
        value = Decimal(arg.strip())
        if name == "multiplier":
            return base * value
        if name == "discount":
            return base * (TOTAL_PERCENT - value) / TOTAL_PERCENT
        return value

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "condition": self.condition, "action": self.action}


@dataclass
class StrategyConfig:
    """A validated revenue strategy."""

    name: str
    splits: list[Split]
    pricing: PricingConfig = field(default_factory=PricingConfig)
    offers: list[OfferRule] = field(default_factory=list)
    modules: list[str] = field(default_factory=list)
    primary_role: str | None = None

    def __post_init__(self):
        validate_splits(self.splits)
        if self.primary_role is not None and self.primary_role not in {s.role for s in self.splits}:
            raise SplitValidationError(f"primary_role '{self.primary_role}' is not one of the split roles")

    @property
    def primary_recipient(self) -> str:
        """Role that absorbs rounding remainders."""
        if self.primary_role:
            return self.primary_role
        for split in self.splits:
            if split.role == "artist":
                return split.role
        return self.splits[0].role

    @classmethod
    def from_payload(cls, payload: dict[str, Any], name: str | None = None) -> "StrategyConfig":
        """
        Parse and validate a strategy payload.

        Accepts ``pct`` or ``percentage`` for split shares and ``offers`` or
        ``programmableOffers`` for offer rules. Raises SplitValidationError
        on the first problem found; nothing is returned half-parsed.
        """
        if not isinstance(payload, dict):
            raise SplitValidationError("Strategy payload must be an object")

        raw_splits = payload.get("splits")
        if not isinstance(raw_splits, list):
            raise SplitValidationError("splits must be a list")
        splits = []
        for i, raw in enumerate(raw_splits):
            if not isinstance(raw, dict):
                raise SplitValidationError(f"split {i} must be an object")
            role = raw.get("role")
            if not isinstance(role, str) or not role.strip():
                raise SplitValidationError(f"split {i} is missing a role")
            pct = raw.get("pct", raw.get("percentage"))
            try:
                pct_value = to_decimal(pct, f"split '{role}' pct")
            except ValidationError as e:
                raise SplitValidationError(e.message)
            splits.append(Split(role=role.strip(), pct=pct_value, recipient=raw.get("recipient")))

        raw_pricing = payload.get("pricing") or {}
        if not isinstance(raw_pricing, dict):
            raise SplitValidationError("pricing must be an object")
        try:
            pricing = PricingConfig(
                base_amount=to_decimal(raw_pricing.get("baseAmount", 0), "pricing.baseAmount"),
                loyalty_multiplier=to_decimal(
                    raw_pricing.get("loyaltyMultiplier", 1), "pricing.loyaltyMultiplier"
                ),
                extra={
                    k: v for k, v in raw_pricing.items() if k not in ("baseAmount", "loyaltyMultiplier")
                },
            )
        except ValidationError as e:
            raise SplitValidationError(e.message)
        if pricing.base_amount < 0 or pricing.loyalty_multiplier < 0:
            raise SplitValidationError("pricing values must be non-negative")

        raw_offers = payload.get("offers", payload.get("programmableOffers")) or []
        if not isinstance(raw_offers, list):
            raise SplitValidationError("offers must be a list")
        offers = []
        for i, raw in enumerate(raw_offers):
            if not isinstance(raw, dict):
                raise SplitValidationError(f"offer {i} must be an object")
            title, condition, action = raw.get("title"), raw.get("condition"), raw.get("action")
            if not all(isinstance(v, str) and v.strip() for v in (title, condition, action)):
                raise SplitValidationError(f"offer {i} missing fields")
            offers.append(OfferRule(title=title, condition=condition, action=action))

        modules = payload.get("modules") or []
        if not isinstance(modules, list):
            raise SplitValidationError("modules must be a list")

        return cls(
            name=name or payload.get("name") or "+".join(str(m) for m in modules) or "strategy",
            splits=splits,
            pricing=pricing,
            offers=offers,
            modules=[str(m) for m in modules],
            primary_role=payload.get("primaryRole", payload.get("primary_role")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "modules": list(self.modules),
            "pricing": self.pricing.to_dict(),
            "offers": [o.to_dict() for o in self.offers],
            "splits": [s.to_dict() for s in self.splits],
        }


@dataclass
class PayoutResult:
    """Payout breakdown for one payment."""

    gross_amount: int | Decimal
    payouts: dict[str, int | Decimal]
    primary_recipient: str
    remainder: int | Decimal
    effective_price: Decimal | None = None
    applied_offer: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "gross_amount": format_amount(self.gross_amount),
            "payouts": {role: format_amount(v) for role, v in self.payouts.items()},
            "primary_recipient": self.primary_recipient,
            "remainder": format_amount(self.remainder),
        }
        if self.effective_price is not None:
            result["effective_price"] = format_amount(self.effective_price)
            result["applied_offer"] = self.applied_offer
        return result


# =============================================================================
# Split computation
# =============================================================================


def validate_splits(splits: list[Split]) -> None:
    """
    Check that a split list is usable.

    Raises:
        SplitValidationError: empty list, blank or duplicate roles,
            negative shares, or a total other than exactly 100
    """
    if not splits:
        raise SplitValidationError("At least one split is required")

    seen: set[str] = set()
    total = Decimal("0")
    for split in splits:
        if not split.role:
            raise SplitValidationError("Every split needs a role")
        if split.role in seen:
            raise SplitValidationError(f"Duplicate split role: {split.role}")
        seen.add(split.role)
        if not isinstance(split.pct, Decimal):
            raise SplitValidationError(f"Split '{split.role}' pct must be numeric")
        if not split.pct.is_finite() or split.pct < 0:
            raise SplitValidationError(f"Split '{split.role}' pct must be a non-negative number")
        total += split.pct

    if total != TOTAL_PERCENT:
        raise SplitValidationError(f"Split percentages must sum to 100, got {format_amount(total)}")


def _payout_result(config: StrategyConfig, gross_amount: Any) -> PayoutResult:
    primary = config.primary_recipient

    if isinstance(gross_amount, int) and not isinstance(gross_amount, bool):
        if gross_amount <= 0:
            raise ValidationError("Amount must be positive")
        payouts: dict[str, Any] = {}
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            for split in config.splits:
                share = (Decimal(gross_amount) * split.pct / TOTAL_PERCENT).to_integral_value(ROUND_DOWN)
                payouts[split.role] = int(share)
        remainder: Any = gross_amount - sum(payouts.values())
        payouts[primary] += remainder
        return PayoutResult(gross_amount, payouts, primary, remainder)

    amount = to_decimal(gross_amount)
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    quantum = _quantum_for(amount)
    payouts = {}
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        for split in config.splits:
            payouts[split.role] = (amount * split.pct / TOTAL_PERCENT).quantize(quantum, rounding=ROUND_DOWN)
        remainder = amount - sum(payouts.values(), Decimal("0"))
        payouts[primary] += remainder
    return PayoutResult(amount, payouts, primary, remainder)


def compute_payouts(config: StrategyConfig, gross_amount: int | Decimal | str | float) -> dict[str, int | Decimal]:
    """
    Distribute ``gross_amount`` across the config's splits.

    Integer input is treated as wei and yields integers. Any other input is
    converted to Decimal and each share is rounded down to the input's own
    precision. The sum of the returned values always equals the input.

    Raises:
        ValidationError: amount is not a positive number
    """
    return _payout_result(config, gross_amount).payouts


def effective_price(config: StrategyConfig, context: dict[str, Any] | None = None) -> Decimal:
    """Price for a listener context: the first matching offer, else baseAmount."""
    return _match_offer(config, context or {})[0]


def _match_offer(config: StrategyConfig, context: dict[str, Any]) -> tuple[Decimal, OfferRule | None]:
    for offer in config.offers:
        if offer.matches(context):
            return offer.apply(config.pricing), offer
    return config.pricing.base_amount, None


def payout_breakdown(
    config: StrategyConfig,
    amount: Any = None,
    context: dict[str, Any] | None = None,
) -> PayoutResult:
    """
    Full payout preview for one payment.

    When ``amount`` is omitted the effective offer price for ``context`` is
    paid out instead.
    """
    price, offer = _match_offer(config, context or {})
    if amount is None:
        if price == 0:
            zero = Decimal("0")
            return PayoutResult(zero, {s.role: zero for s in config.splits},
                                config.primary_recipient, zero, price, offer.title if offer else None)
        amount = price
    result = _payout_result(config, amount)
    result.effective_price = price
    result.applied_offer = offer.title if offer else None
    return result


# =============================================================================
# Config export & hashing
# =============================================================================


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_config_hash(payload: dict[str, Any]) -> str:
    """sha256 hex of the canonical JSON body, excluding hash and signature fields."""
    body = {k: v for k, v in payload.items() if k not in _UNHASHED_FIELDS}
    return hashlib.sha256(_canonical_json(body).encode("utf-8")).hexdigest()


def build_strategy_export(
    config: StrategyConfig,
    generated_at: str | None = None,
    admin_signature: str | None = None,
) -> dict[str, Any]:
    """Build the publishable export document for a validated config."""
    body = {
        "kind": STRATEGY_EXPORT_KIND,
        "version": STRATEGY_EXPORT_VERSION,
        **config.to_payload(),
        "generatedAt": generated_at or datetime.now(timezone.utc).isoformat(),
    }
    body["hash"] = compute_config_hash(body)
    if admin_signature:
        body["admin_signature"] = admin_signature
    return body


# =============================================================================
# Strategy catalog & basis-point previews
# =============================================================================


@dataclass(frozen=True)
class StrategyInfo:
    """An on-chain economic strategy and its default protocol fee."""

    id: str
    name: str
    description: str
    category: str
    payment_model: PaymentModel
    min_payment: Decimal
    protocol_fee_bps: int
    supports_free_listening: bool = False
    supports_tips: bool = False
    supports_subscriptions: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "payment_model": self.payment_model.value,
            "min_payment": float(self.min_payment),
            "default_protocol_fee_bps": self.protocol_fee_bps,
            "supports_free_listening": self.supports_free_listening,
            "supports_tips": self.supports_tips,
            "supports_subscriptions": self.supports_subscriptions,
        }


STRATEGY_CATALOG: dict[str, StrategyInfo] = {
    s.id: s
    for s in (
        StrategyInfo("pay-per-stream-v1", "Pay Per Stream",
                     "Listeners pay per stream with instant royalty distribution.",
                     "direct-payment", PaymentModel.PAY_PER_STREAM, Decimal("0.01"), 100,
                     supports_tips=True),
        StrategyInfo("gift-economy-v1", "Gift Economy",
                     "Free listening with community rewards and optional tips.",
                     "community", PaymentModel.GIFT_ECONOMY, Decimal("0"), 100,
                     supports_free_listening=True, supports_tips=True),
        StrategyInfo("subscription-v1", "Subscription",
                     "Monthly fee for unlimited listening.",
                     "recurring", PaymentModel.SUBSCRIPTION, Decimal("5"), 200,
                     supports_tips=True, supports_subscriptions=True),
        StrategyInfo("patronage-v1", "Patronage",
                     "Recurring support from dedicated fans.",
                     "recurring", PaymentModel.PATRONAGE, Decimal("1"), 100,
                     supports_free_listening=True, supports_subscriptions=True),
        StrategyInfo("nft-gated-v1", "NFT Gated",
                     "Exclusive content for NFT holders.",
                     "token-gated", PaymentModel.NFT_GATED, Decimal("0"), 250,
                     supports_free_listening=True, supports_tips=True),
        StrategyInfo("pay-what-you-want-v1", "Pay What You Want",
                     "Listener chooses the amount. No minimum.",
                     "flexible", PaymentModel.PAY_WHAT_YOU_WANT, Decimal("0"), 100,
                     supports_free_listening=True, supports_tips=True),
        StrategyInfo("auction-v1", "Auction",
                     "Time-limited bidding for exclusive releases.",
                     "auction", PaymentModel.AUCTION, Decimal("1"), 500),
        StrategyInfo("freemium-v1", "Freemium",
                     "Free tier with premium features.",
                     "tiered", PaymentModel.FREEMIUM, Decimal("0"), 150,
                     supports_free_listening=True, supports_tips=True, supports_subscriptions=True),
        StrategyInfo("time-barter-v1", "Time Barter (TEND)",
                     "Exchange TEND tokens for access.",
                     "alternative-currency", PaymentModel.TIME_BARTER, Decimal("0"), 0),
        StrategyInfo("download-v1", "Pay Per Download",
                     "One-time payment to own the file.",
                     "direct-payment", PaymentModel.PAY_PER_DOWNLOAD, Decimal("0.99"), 100),
        StrategyInfo("staking-gated-v1", "Staking Gated",
                     "Stake tokens to access content.",
                     "token-gated", PaymentModel.STAKING_GATED, Decimal("0"), 50,
                     supports_free_listening=True, supports_tips=True),
    )
}


PRESET_STRATEGIES: dict[str, dict[str, Any]] = {
    "independentArtist": {
        "name": "Independent Artist",
        "description": "Artist keeps 95%, protocol takes 5%.",
        "splits": [
            {"role": "artist", "basis_points": 9500},
            {"role": "protocol", "basis_points": 500},
        ],
    },
    "communityCollective": {
        "name": "Community Collective",
        "description": "Revenue shared with the DAO treasury and the local scene.",
        "splits": [
            {"role": "artist", "basis_points": 8000},
            {"role": "dao_treasury", "basis_points": 1000},
            {"role": "local_scene", "basis_points": 500},
            {"role": "protocol", "basis_points": 500},
        ],
    },
    "collaborativeSplit": {
        "name": "Collaborative Split",
        "description": "Two artists and a producer share the revenue.",
        "splits": [
            {"role": "artist_1", "basis_points": 5000},
            {"role": "artist_2", "basis_points": 3000},
            {"role": "producer", "basis_points": 1500},
            {"role": "protocol", "basis_points": 500},
        ],
    },
}


def get_strategy(strategy_id: str) -> StrategyInfo:
    try:
        return STRATEGY_CATALOG[strategy_id]
    except KeyError:
        raise NotFoundError(f"Unknown strategy: {strategy_id}")


def preview_splits(strategy_id: str, amount: Any, splits_bps: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Deduct the strategy's protocol fee, then share the net by basis points.

    Args:
        strategy_id: Catalog id, e.g. ``pay-per-stream-v1``
        amount: Gross amount (integer wei or decimal)
        splits_bps: ``[{role, basis_points, recipient?}]`` summing to 10000

    Returns:
        Gross, fee, net and one distribution per split. Rounding remainders
        go to the first split.
    """
    strategy = get_strategy(strategy_id)

    if not isinstance(splits_bps, list) or not splits_bps:
        raise SplitValidationError("At least one split is required")
    parsed = []
    for i, raw in enumerate(splits_bps):
        if not isinstance(raw, dict):
            raise SplitValidationError(f"split {i} must be an object")
        bps = raw.get("basis_points", raw.get("bps"))
        if isinstance(bps, bool) or not isinstance(bps, int) or bps < 0:
            raise SplitValidationError(f"split {i} basis_points must be a non-negative integer")
        parsed.append((str(raw.get("role") or f"split_{i}"), raw.get("recipient"), bps))
    total = sum(bps for _, _, bps in parsed)
    if total != TOTAL_BPS:
        raise SplitValidationError(f"Split basis points must sum to {TOTAL_BPS}, got {total}")

    if isinstance(amount, int) and not isinstance(amount, bool):
        gross: Any = amount
        if gross <= 0:
            raise ValidationError("Amount must be positive")
        fee: Any = gross * strategy.protocol_fee_bps // TOTAL_BPS
        net: Any = gross - fee
        shares = [net * bps // TOTAL_BPS for _, _, bps in parsed]
    else:
        gross = to_decimal(amount)
        if gross <= 0:
            raise ValidationError("Amount must be positive")
        quantum = _quantum_for(gross)
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            fee = (gross * strategy.protocol_fee_bps / TOTAL_BPS).quantize(quantum, rounding=ROUND_DOWN)
            net = gross - fee
            shares = [(net * bps / TOTAL_BPS).quantize(quantum, rounding=ROUND_DOWN) for _, _, bps in parsed]
            shares[0] += net - sum(shares, Decimal("0"))
    if isinstance(gross, int):
        shares[0] += net - sum(shares)

    return {
        "strategy_id": strategy.id,
        "protocol_fee_bps": strategy.protocol_fee_bps,
        "gross_amount": format_amount(gross),
        "protocol_fee": format_amount(fee),
        "net_amount": format_amount(net),
        "distributions": [
            {
                "role": role,
                "recipient": recipient,
                "basis_points": bps,
                "percentage": bps / 100,
                "amount": format_amount(share),
            }
            for (role, recipient, bps), share in zip(parsed, shares)
        ],
    }


# =============================================================================
# Module lift simulation
# =============================================================================


def clamp_preview_days(days: Any) -> int:
    try:
        value = int(str(days).strip())
    except (TypeError, ValueError):
        value = PREVIEW_DEFAULT_DAYS
    if value == 0:
        value = PREVIEW_DEFAULT_DAYS
    return min(PREVIEW_MAX_DAYS, max(PREVIEW_MIN_DAYS, value))


def _pricing_number(pricing: dict[str, Any], key: str, default: float) -> float:
    try:
        return float(pricing.get(key, default))
    except (TypeError, ValueError):
        return default


def simulate_preview(
    payload: dict[str, Any],
    per_type: list[dict[str, Any]],
    days: int,
    modules: list[str] | None = None,
) -> dict[str, Any]:
    """
    Estimate how enabling pricing modules would change recent net revenue.

    ``per_type`` is the list of ``{payment_type, plays, net}`` totals for
    the window. Lifts are heuristics tuned by optional pricing keys:

    - dynamic: ``1 + min(dynamicMax, log1p(max(1, plays/day)) / max(1, dynamicCurve))``
      scaled by ``1 + dynamicLift``
    - loyalty: ``1 + min(loyaltyMax, (plays/day) / 1000)`` scaled by
      ``1 + loyaltyLift``
    """
    active = [str(m) for m in (modules or [])]
    pricing = payload.get("pricing") if isinstance(payload.get("pricing"), dict) else {}

    total_net = sum(float(row.get("net") or 0) for row in per_type)
    total_plays = sum(int(row.get("plays") or 0) for row in per_type)
    avg_per_day = total_plays / max(1, days)

    impacts = []
    dynamic_lift = 1.0
    if "dynamic" in active:
        cap = _pricing_number(pricing, "dynamicMax", DEFAULT_DYNAMIC_MAX)
        curve = _pricing_number(pricing, "dynamicCurve", DEFAULT_DYNAMIC_CURVE)
        heuristic = 1 + min(cap, math.log1p(max(1.0, avg_per_day)) / max(1.0, curve))
        dynamic_lift = heuristic * (1 + _pricing_number(pricing, "dynamicLift", 0.0))
        impacts.append(("dynamic", dynamic_lift))

    loyalty_lift = 1.0
    if "loyalty" in active:
        cap = _pricing_number(pricing, "loyaltyMax", DEFAULT_LOYALTY_MAX)
        heuristic = 1 + min(cap, avg_per_day / 1000)
        loyalty_lift = heuristic * (1 + _pricing_number(pricing, "loyaltyLift", 0.0))
        impacts.append(("loyalty", loyalty_lift))

    simulated_net = total_net * dynamic_lift * loyalty_lift

    return {
        "base": {"totalNet": total_net, "totalPlays": total_plays},
        "simulated": {
            "totalNet": simulated_net,
            "totalPlays": total_plays,
            "delta": simulated_net - total_net,
        },
        "modules": active,
        "impacts": [
            {"name": name, "lift": lift, "netDelta": total_net * lift - total_net}
            for name, lift in impacts
        ],
        "perType": per_type,
        "days": days,
    }
