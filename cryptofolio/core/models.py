"""Data models for the ledger."""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum

from cryptofolio.core.errors import InvalidInput


class AssetType(str, Enum):
    FIAT = "fiat"
    CRYPTO = "crypto"
    STABLECOIN = "stablecoin"

    @classmethod
    def parse(cls, value: "str | AssetType") -> "AssetType":
        """Parse an asset type, accepting the aliases the CLI has always allowed."""
        if isinstance(value, AssetType):
            return value
        aliases = {
            "fiat": cls.FIAT,
            "crypto": cls.CRYPTO,
            "cryptocurrency": cls.CRYPTO,
            "stablecoin": cls.STABLECOIN,
            "stable": cls.STABLECOIN,
        }
        try:
            return aliases[str(value).strip().lower()]
        except KeyError:
            raise InvalidInput(f"Unknown asset type: {value}") from None

    @property
    def display_name(self) -> str:
        return {
            AssetType.FIAT: "Fiat",
            AssetType.CRYPTO: "Cryptocurrency",
            AssetType.STABLECOIN: "Stablecoin",
        }[self]


class AccountType(str, Enum):
    EXCHANGE = "exchange"
    HARDWARE_WALLET = "hardware_wallet"
    SOFTWARE_WALLET = "software_wallet"
    CUSTODIAL_SERVICE = "custodial_service"
    BANK = "bank"


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER = "transfer"
    SWAP = "swap"


@dataclass
class Currency:
    code: str
    name: str
    symbol: str
    decimals: int
    asset_type: AssetType
    enabled: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self):
        self.code = self.code.strip().upper()
        self.asset_type = AssetType.parse(self.asset_type)

    @property
    def is_fiat(self) -> bool:
        return self.asset_type == AssetType.FIAT

    @property
    def is_crypto(self) -> bool:
        # Stablecoins are crypto assets too
        return self.asset_type in (AssetType.CRYPTO, AssetType.STABLECOIN)

    @property
    def is_stablecoin(self) -> bool:
        return self.asset_type == AssetType.STABLECOIN

    def round_display(self, amount: Decimal) -> Decimal:
        """Round an amount to this currency's display precision."""
        return amount.quantize(Decimal(1).scaleb(-self.decimals), rounding=ROUND_HALF_EVEN)

    def format(self, amount: Decimal) -> str:
        return f"{self.symbol}{self.round_display(amount):,.{self.decimals}f}"


@dataclass
class ExchangeRate:
    """Directional rate: `rate` units of to_currency per one from_currency."""
    from_currency: str
    to_currency: str
    rate: Decimal
    timestamp: datetime
    source: str = "manual"
    notes: str | None = None
    id: int | None = None
    created_at: datetime | None = None

    def __post_init__(self):
        self.from_currency = self.from_currency.strip().upper()
        self.to_currency = self.to_currency.strip().upper()

    @property
    def pair(self) -> str:
        return f"{self.from_currency}/{self.to_currency}"

    def inverse(self) -> "ExchangeRate":
        """Derived reverse rate. Never persisted."""
        return ExchangeRate(
            from_currency=self.to_currency,
            to_currency=self.from_currency,
            rate=Decimal(1) / self.rate,
            timestamp=self.timestamp,
            source="calculated",
            notes=f"Inverse of {self.pair}",
        )


@dataclass
class Category:
    id: str
    name: str
    sort_order: int = 0
    created_at: datetime | None = None


@dataclass
class Account:
    id: str
    name: str
    account_type: AccountType
    category_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Holding:
    account_id: str
    asset: str
    quantity: Decimal
    avg_cost_basis: Decimal
    cost_basis_currency: str
    id: int | None = None
    updated_at: datetime | None = None

    @property
    def cost_basis_total(self) -> Decimal:
        return self.quantity * self.avg_cost_basis


@dataclass
class HoldingSnapshot:
    """Outcome of applying one quantity delta to a holding."""
    before: Holding | None
    after: Holding
    quantity_delta: Decimal
    realized_pnl: Decimal | None = None  # advisory, never persisted


@dataclass
class Transaction:
    id: int | None
    tx_type: TransactionType
    timestamp: datetime
    from_account_id: str | None = None
    from_asset: str | None = None
    from_quantity: Decimal | None = None
    to_account_id: str | None = None
    to_asset: str | None = None
    to_quantity: Decimal | None = None
    unit_price: Decimal | None = None
    price_currency: str | None = None
    fee: Decimal | None = None
    fee_asset: str | None = None
    exchange_rate: Decimal | None = None
    exchange_rate_pair: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


# Transaction requests, dispatched by TransactionRecorder.record

@dataclass(frozen=True)
class Buy:
    account: str
    asset: str
    quantity: Decimal
    unit_price: Decimal
    price_currency: str | None = None
    timestamp: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Sell:
    account: str
    asset: str
    quantity: Decimal
    unit_price: Decimal
    price_currency: str | None = None
    timestamp: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Transfer:
    from_account: str
    to_account: str
    asset: str
    quantity: Decimal
    fee: Decimal = Decimal("0")
    fee_asset: str | None = None  # defaults to the transferred asset
    timestamp: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Swap:
    from_account: str
    from_asset: str
    from_quantity: Decimal
    to_asset: str
    to_quantity: Decimal
    to_account: str | None = None  # defaults to from_account
    manual_rate: Decimal | None = None  # FROM units per one TO unit
    timestamp: datetime | None = None
    notes: str | None = None


TransactionRequest = Buy | Sell | Transfer | Swap


@dataclass
class TransactionResult:
    transaction: Transaction
    holdings: list[HoldingSnapshot] = field(default_factory=list)
    realized_pnl: Decimal | None = None
    fee_loss: Decimal | None = None
    exchange_rate: ExchangeRate | None = None
    dry_run: bool = False


@dataclass
class HoldingValuation:
    """Computed valuation for a holding.

    value, cost and unrealized_pnl are in the holding's cost-basis currency;
    base_value and base_cost are converted to the portfolio base currency.
    """
    holding: Holding
    account_name: str
    category_id: str | None
    price: Decimal | None
    value: Decimal | None
    cost: Decimal
    unrealized_pnl: Decimal | None
    pnl_percent: Decimal | None
    base_value: Decimal | None = None
    base_cost: Decimal | None = None


@dataclass
class AccountSummary:
    account_id: str
    account_name: str
    category_id: str | None
    holdings: list[HoldingValuation]
    total_value: Decimal
    total_cost: Decimal
    unrealized_pnl: Decimal
    pnl_percent: Decimal
    currency: str


@dataclass
class CategorySummary:
    category_id: str | None
    category_name: str
    accounts: list[AccountSummary]
    total_value: Decimal
    total_cost: Decimal
    unrealized_pnl: Decimal
    pnl_percent: Decimal
    currency: str


@dataclass
class AssetTotal:
    asset: str
    quantity: Decimal
    value: Decimal
    cost: Decimal
    unrealized_pnl: Decimal
    currency: str


@dataclass
class PortfolioSummary:
    total_value: Decimal
    total_cost: Decimal
    unrealized_pnl: Decimal
    pnl_percent: Decimal
    holdings_count: int
    unpriced_assets: list[str]
    currency: str
