"""
Modules — встроенные entry-функции протокола для SandboxLedger

Модули (пакет NetworkConfig.apex_package):
- apex: регистрация сервиса, оплата доступа (цена — провайдеру, сдача —
  плательщику), поток оплаты из эскроу
- deepbook_v3: spot-обмен по фиксированной цене пула, AgentTrader
- trading_intents: эскроу intent, исполнение, отмена, возврат после дедлайна
- deepbook_margin_v3: залог, заимствование, risk ratio

Правила переходов intent берутся из IntentStateMachine, правила риска — из
src.risk: песочница исполняет ту же логику, которую клиент проверяет
заранее.

Цена пула — количество quote за единицу base в фиксированной точке
(price / 10^price_decimals).
"""

import logging
from enum import IntEnum
from typing import Any, Dict, List

from src.core.config import NetworkConfig
from src.core.domain.intent import Intent, IntentStatus
from src.core.domain.ledger_object import LedgerObject
from src.core.domain.values import normalize_address
from src.core.math.fixed_point import mul_div_floor, value_at_price
from src.intents.state_machine import IntentAbortCode, IntentEvent, IntentStateMachine
from src.ledger.sandbox import ExecutionContext, SandboxLedger, StoredObject
from src.ptb.protocol import (
    APEX_MODULE,
    INTENTS_MODULE,
    MARGIN_MODULE,
    SPOT_MODULE,
    protocol_signatures,
)
from src.risk.evaluator import (
    DEFAULT_THRESHOLDS,
    OraclePrice,
    StaticPriceOracle,
    evaluate_margin_position,
)

logger = logging.getLogger(__name__)


class SpotAbortCode(IntEnum):
    """Коды abort модулей apex и deepbook_v3."""

    INSUFFICIENT_PAYMENT = 1
    MIN_OUTPUT = 2
    INSUFFICIENT_LIQUIDITY = 3
    TYPE_MISMATCH = 4
    INVALID_RATE = 5
    EMPTY_ESCROW = 6


class MarginAbortCode(IntEnum):
    """Коды abort модуля deepbook_margin_v3."""

    INSUFFICIENT_LIQUIDITY = 20
    RISK_TOO_HIGH = 21
    TYPE_MISMATCH = 22


# =============================================================================
# УСТАНОВКА
# =============================================================================


def install_protocol(ledger: SandboxLedger, network: NetworkConfig) -> None:
    """Регистрация entry-функций протокола (вместе с сигнатурами) в песочнице."""
    functions = {
        (APEX_MODULE, "purchase_access"): purchase_access,
        (APEX_MODULE, "register_service_provider"): register_service_provider,
        (APEX_MODULE, "start_stream"): start_stream,
        (SPOT_MODULE, "create_agent_trader"): create_agent_trader,
        (SPOT_MODULE, "swap_base_for_quote"): swap_base_for_quote,
        (SPOT_MODULE, "swap_quote_for_base"): swap_quote_for_base,
        (INTENTS_MODULE, "create_swap_intent"): create_swap_intent,
        (INTENTS_MODULE, "execute_intent_swap"): execute_intent_swap,
        (INTENTS_MODULE, "cancel_intent"): cancel_intent,
        (INTENTS_MODULE, "reclaim_expired"): reclaim_expired,
        (MARGIN_MODULE, "create_margin_manager"): create_margin_manager,
        (MARGIN_MODULE, "deposit_collateral"): deposit_collateral,
        (MARGIN_MODULE, "borrow_base"): borrow_base,
        (MARGIN_MODULE, "borrow_quote"): borrow_quote,
        (MARGIN_MODULE, "get_risk_ratio"): get_risk_ratio,
    }
    signatures = protocol_signatures(network)
    for (module, function), implementation in functions.items():
        target = network.target(module, function)
        ledger.register(target, implementation, signatures.get(target))
    logger.debug("Installed %d protocol entry functions", len(functions))


# =============================================================================
# НАЧАЛЬНОЕ СОСТОЯНИЕ
# =============================================================================


def _type(network: NetworkConfig, module: str, name: str) -> str:
    return f"{network.apex_package}::{module}::{name}"


def create_intent_registry(ledger: SandboxLedger, network: NetworkConfig) -> LedgerObject:
    return ledger.create_shared_object(
        _type(network, INTENTS_MODULE, "IntentRegistry"), {"intent_count": 0}
    )


def create_pool(
    ledger: SandboxLedger,
    network: NetworkConfig,
    base_type: str,
    quote_type: str,
    price: int,
    price_decimals: int,
    base_reserve: int,
    quote_reserve: int,
) -> LedgerObject:
    """Shared пул с фиксированной ценой и резервами."""
    if price <= 0:
        raise ValueError(f"pool price must be positive, got {price}")
    return ledger.create_shared_object(
        _type(network, SPOT_MODULE, f"Pool<{base_type}, {quote_type}>"),
        {
            "base_type": base_type,
            "quote_type": quote_type,
            "price": price,
            "price_decimals": price_decimals,
            "base_reserve": base_reserve,
            "quote_reserve": quote_reserve,
        },
    )


def create_service(
    ledger: SandboxLedger,
    network: NetworkConfig,
    price: int,
    coin_type: str,
    provider: str,
    name: str = "",
    description: str = "",
) -> LedgerObject:
    return ledger.create_shared_object(
        _type(network, APEX_MODULE, "Service"),
        {
            "name": name,
            "description": description,
            "price": price,
            "coin_type": coin_type,
            "provider": normalize_address(provider),
            "receipts_issued": 0,
        },
    )


def create_price_oracle(
    ledger: SandboxLedger, network: NetworkConfig, coin_type: str, price: int, decimals: int
) -> LedgerObject:
    return ledger.create_shared_object(
        _type(network, MARGIN_MODULE, "PriceOracle"),
        {"coin_type": coin_type, "price": price, "decimals": decimals},
    )


def create_margin_pool(
    ledger: SandboxLedger, network: NetworkConfig, coin_type: str, liquidity: int
) -> LedgerObject:
    return ledger.create_shared_object(
        _type(network, MARGIN_MODULE, f"MarginPool<{coin_type}>"),
        {"coin_type": coin_type, "liquidity": liquidity, "borrowed": 0},
    )


def create_margin_registry(ledger: SandboxLedger, network: NetworkConfig) -> LedgerObject:
    return ledger.create_shared_object(
        _type(network, MARGIN_MODULE, "MarginRegistry"), {"managers": 0}
    )


# =============================================================================
# APEX
# =============================================================================


def purchase_access(ctx: ExecutionContext, args: List[Any]):
    """Оплата доступа: цена уходит провайдеру, сдача остаётся в монете плательщика."""
    service_id, payment_id = args
    service = ctx.borrow_mut(service_id)
    price = service.content["price"]

    if ctx.coin_type(payment_id) != service.content["coin_type"]:
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, "payment coin type does not match service")
    if ctx.balance(payment_id) < price:
        ctx.abort(
            SpotAbortCode.INSUFFICIENT_PAYMENT,
            f"payment {ctx.balance(payment_id)} below price {price}",
        )

    fee_id = ctx.split(payment_id, price)
    ctx.transfer(fee_id, service.content["provider"])
    ctx.transfer(payment_id, ctx.sender)
    service.content["receipts_issued"] += 1

    receipt_id = ctx.create(
        f"{ctx.package}::{APEX_MODULE}::AccessReceipt",
        {"service_id": service_id, "payer": ctx.sender, "paid": price, "timestamp_ms": ctx.now_ms},
    )
    return (receipt_id,)


def register_service_provider(ctx: ExecutionContext, args: List[Any]):
    """Shared Service отправителя с ценой в монетах type_arguments[0]."""
    name, description, base_price = args
    (coin_type,) = ctx.type_arguments
    service_id = ctx.create(
        f"{ctx.package}::{APEX_MODULE}::Service",
        {
            "name": name,
            "description": description,
            "price": base_price,
            "coin_type": coin_type,
            "provider": ctx.sender,
            "receipts_issued": 0,
        },
    )
    ctx.share(service_id)
    return ()


def _load_typed(ctx: ExecutionContext, object_id: str, suffix: str, mutable: bool) -> StoredObject:
    obj = ctx.borrow_mut(object_id) if mutable else ctx.get(object_id)
    if not obj.type_tag.endswith(suffix):
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, f"object is not {suffix}: {obj.type_tag}", object_id)
    return obj


def start_stream(ctx: ExecutionContext, args: List[Any]):
    """
    Поток оплаты: монета целиком уходит в эскроу PaymentStream.

    Поток отдаётся отправителю; начисление провайдеру по rate_per_second
    считается от started_ms.
    """
    agent_id, service_id, coin_id, rate_per_second, _clock = args
    agent = _load_typed(ctx, agent_id, f"::{SPOT_MODULE}::AgentTrader", mutable=True)
    service = _load_typed(ctx, service_id, f"::{APEX_MODULE}::Service", mutable=False)

    coin_type = service.content["coin_type"]
    if ctx.coin_type(coin_id) != coin_type:
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, f"escrow coin is not {coin_type}", coin_id)
    if rate_per_second == 0:
        ctx.abort(SpotAbortCode.INVALID_RATE, "rate_per_second must be positive")
    escrow = ctx.burn(coin_id)
    if escrow == 0:
        ctx.abort(SpotAbortCode.EMPTY_ESCROW, "escrow amount must be positive", coin_id)

    agent.content["streams"] += 1
    stream_id = ctx.create(
        f"{ctx.package}::{APEX_MODULE}::PaymentStream",
        {
            "agent": agent_id,
            "service_id": service_id,
            "provider": service.content["provider"],
            "payer": ctx.sender,
            "coin_type": coin_type,
            "escrow": escrow,
            "rate_per_second": rate_per_second,
            "started_ms": ctx.now_ms,
        },
    )
    return (stream_id,)


# =============================================================================
# SPOT
# =============================================================================


def create_agent_trader(ctx: ExecutionContext, args: List[Any]):
    trader_id = ctx.create(
        f"{ctx.package}::{SPOT_MODULE}::AgentTrader", {"owner": ctx.sender, "streams": 0}
    )
    return (trader_id,)


def _load_pool(ctx: ExecutionContext, pool_id: str) -> StoredObject:
    pool = ctx.borrow_mut(pool_id)
    if f"::{SPOT_MODULE}::Pool<" not in pool.type_tag:
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, f"object is not a pool: {pool.type_tag}", pool_id)
    return pool


def _check_pool_types(ctx: ExecutionContext, pool: StoredObject) -> None:
    base_type, quote_type = ctx.type_arguments
    if (pool.content["base_type"], pool.content["quote_type"]) != (base_type, quote_type):
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, "type arguments do not match pool", pool.object_id)


def quote_out_for_base(pool: Dict[str, Any], base_in: int) -> int:
    """Выход quote за base_in по цене пула (округление вниз)."""
    return value_at_price(base_in, pool["price"], pool["price_decimals"])


def base_out_for_quote(pool: Dict[str, Any], quote_in: int) -> int:
    """Выход base за quote_in по цене пула (округление вниз)."""
    return mul_div_floor(quote_in, 10 ** pool["price_decimals"], pool["price"])


def _swap(ctx: ExecutionContext, args: List[Any], sell_base: bool):
    pool_id, coin_in_id, deep_coin_id, min_out, _clock = args
    pool = _load_pool(ctx, pool_id)
    _check_pool_types(ctx, pool)
    base_type, quote_type = ctx.type_arguments
    in_type, out_type = (base_type, quote_type) if sell_base else (quote_type, base_type)

    if ctx.coin_type(coin_in_id) != in_type:
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, f"input coin is not {in_type}", coin_in_id)

    amount_in = ctx.burn(coin_in_id)
    if sell_base:
        amount_out = quote_out_for_base(pool.content, amount_in)
        reserve_in, reserve_out = "base_reserve", "quote_reserve"
    else:
        amount_out = base_out_for_quote(pool.content, amount_in)
        reserve_in, reserve_out = "quote_reserve", "base_reserve"

    if amount_out < min_out:
        ctx.abort(SpotAbortCode.MIN_OUTPUT, f"output {amount_out} below minimum {min_out}")
    if amount_out > pool.content[reserve_out]:
        ctx.abort(SpotAbortCode.INSUFFICIENT_LIQUIDITY, f"pool cannot pay {amount_out}", pool_id)

    pool.content[reserve_in] += amount_in
    pool.content[reserve_out] -= amount_out

    # Комиссия DEEP не взимается: монета возвращается целиком
    ctx.coin_type(deep_coin_id)

    remainder = ctx.mint(in_type, 0)
    output = ctx.mint(out_type, amount_out)
    if sell_base:
        return (remainder, output, deep_coin_id)
    return (output, remainder, deep_coin_id)


def swap_base_for_quote(ctx: ExecutionContext, args: List[Any]):
    return _swap(ctx, args, sell_base=True)


def swap_quote_for_base(ctx: ExecutionContext, args: List[Any]):
    return _swap(ctx, args, sell_base=False)


# =============================================================================
# INTENTS
# =============================================================================

_intent_rules = IntentStateMachine()


def _load_intent(ctx: ExecutionContext, intent_id: str) -> StoredObject:
    intent = ctx.borrow_mut(intent_id)
    coin_type, output_type = ctx.type_arguments
    if (intent.content["coin_type"], intent.content["output_type"]) != (coin_type, output_type):
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, "type arguments do not match intent", intent_id)
    return intent


def _apply_transition(
    ctx: ExecutionContext, intent: StoredObject, event: IntentEvent, output_amount=None
):
    result = _intent_rules.evaluate(
        Intent.from_ledger_object(intent.snapshot()),
        event,
        now_ms=ctx.now_ms,
        actor=ctx.sender,
        output_amount=output_amount,
    )
    if not result.transition_occurred:
        ctx.abort(result.abort_code, result.details, intent.object_id)
    intent.content["status"] = result.new_status.value
    return result


def create_swap_intent(ctx: ExecutionContext, args: List[Any]):
    """Эскроу input_coin в новом shared intent."""
    registry_id, coin_id, min_output, recipient, deadline_ms, _clock = args
    coin_type, output_type = ctx.type_arguments

    if ctx.coin_type(coin_id) != coin_type:
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, f"escrow coin is not {coin_type}", coin_id)
    if deadline_ms <= ctx.now_ms:
        ctx.abort(
            IntentAbortCode.INVALID_DEADLINE, f"deadline {deadline_ms} is not after {ctx.now_ms}"
        )
    escrow = ctx.burn(coin_id)
    if escrow == 0:
        ctx.abort(IntentAbortCode.ZERO_ESCROW, "escrow amount must be positive", coin_id)

    ctx.borrow_mut(registry_id).content["intent_count"] += 1
    intent_id = ctx.create(
        f"{ctx.package}::{INTENTS_MODULE}::SwapIntent<{coin_type}, {output_type}>",
        {
            "creator": ctx.sender,
            "coin_type": coin_type,
            "escrow_amount": escrow,
            "output_type": output_type,
            "min_output": min_output,
            "recipient": recipient,
            "deadline_ms": deadline_ms,
            "status": IntentStatus.OPEN.value,
            "filled_by": None,
            "filled_output": None,
        },
    )
    ctx.share(intent_id)
    return ()


def execute_intent_swap(ctx: ExecutionContext, args: List[Any]):
    """
    Исполнение intent через пул: эскроу обменивается по цене пула, выход
    выплачивается получателю. Выход ниже min_output — abort, intent
    остаётся OPEN.
    """
    intent_id, pool_id, _deep_coin, _clock = args
    intent = _load_intent(ctx, intent_id)
    pool = _load_pool(ctx, pool_id)
    coin_type, output_type = ctx.type_arguments
    escrow = intent.content["escrow_amount"]

    pair = (pool.content["base_type"], pool.content["quote_type"])
    if pair == (coin_type, output_type):
        amount_out = quote_out_for_base(pool.content, escrow)
        reserve_in, reserve_out = "base_reserve", "quote_reserve"
    elif pair == (output_type, coin_type):
        amount_out = base_out_for_quote(pool.content, escrow)
        reserve_in, reserve_out = "quote_reserve", "base_reserve"
    else:
        ctx.abort(SpotAbortCode.TYPE_MISMATCH, "pool does not trade the intent pair", pool_id)

    _apply_transition(ctx, intent, IntentEvent.FILL, output_amount=amount_out)

    if amount_out > pool.content[reserve_out]:
        ctx.abort(SpotAbortCode.INSUFFICIENT_LIQUIDITY, f"pool cannot pay {amount_out}", pool_id)
    pool.content[reserve_in] += escrow
    pool.content[reserve_out] -= amount_out

    intent.content["filled_by"] = ctx.sender
    intent.content["filled_output"] = amount_out
    ctx.mint(output_type, amount_out, owner=intent.content["recipient"])
    return ()


def cancel_intent(ctx: ExecutionContext, args: List[Any]):
    """Отмена создателем: эскроу возвращается создателю."""
    intent_id, _clock = args
    intent = _load_intent(ctx, intent_id)
    _apply_transition(ctx, intent, IntentEvent.CANCEL)
    ctx.mint(intent.content["coin_type"], intent.content["escrow_amount"], owner=intent.content["creator"])
    return ()


def reclaim_expired(ctx: ExecutionContext, args: List[Any]):
    """Возврат эскроу создателю после дедлайна (инициатор — любой)."""
    intent_id, _clock = args
    intent = _load_intent(ctx, intent_id)
    _apply_transition(ctx, intent, IntentEvent.EXPIRE)
    ctx.mint(intent.content["coin_type"], intent.content["escrow_amount"], owner=intent.content["creator"])
    return ()


# =============================================================================
# MARGIN
# =============================================================================


def create_margin_manager(ctx: ExecutionContext, args: List[Any]):
    (registry_id,) = args
    base_type, quote_type = ctx.type_arguments
    ctx.borrow_mut(registry_id).content["managers"] += 1
    manager_id = ctx.create(
        f"{ctx.package}::{MARGIN_MODULE}::MarginManager<{base_type}, {quote_type}>",
        {
            "owner": ctx.sender,
            "base_type": base_type,
            "quote_type": quote_type,
            "deposits": {},
            "base_debt": 0,
            "quote_debt": 0,
        },
    )
    return (manager_id,)


def _load_manager(ctx: ExecutionContext, manager_id: str) -> StoredObject:
    manager = ctx.borrow_mut(manager_id)
    base_type, quote_type = ctx.type_arguments[:2]
    if (manager.content["base_type"], manager.content["quote_type"]) != (base_type, quote_type):
        ctx.abort(MarginAbortCode.TYPE_MISMATCH, "type arguments do not match manager", manager_id)
    return manager


def _oracle(ctx: ExecutionContext, manager: StoredObject, base_oracle_id: str, quote_oracle_id: str):
    prices = {}
    for oracle_id, expected in (
        (base_oracle_id, manager.content["base_type"]),
        (quote_oracle_id, manager.content["quote_type"]),
    ):
        content = ctx.get(oracle_id).content
        if content["coin_type"] != expected:
            ctx.abort(MarginAbortCode.TYPE_MISMATCH, f"oracle does not price {expected}", oracle_id)
        prices[expected] = OraclePrice(price=content["price"], decimals=content["decimals"])
    return StaticPriceOracle(prices)


def _position(ctx: ExecutionContext, manager: StoredObject, base_oracle_id: str, quote_oracle_id: str):
    oracle = _oracle(ctx, manager, base_oracle_id, quote_oracle_id)
    debt = {
        manager.content["base_type"]: manager.content["base_debt"],
        manager.content["quote_type"]: manager.content["quote_debt"],
    }
    try:
        return evaluate_margin_position(manager.content["deposits"], debt, oracle)
    except LookupError as e:
        ctx.abort(MarginAbortCode.TYPE_MISMATCH, str(e), manager.object_id)


def deposit_collateral(ctx: ExecutionContext, args: List[Any]):
    manager_id, _registry, _base_oracle, _quote_oracle, coin_id, _clock = args
    manager = _load_manager(ctx, manager_id)
    deposit_type = ctx.type_arguments[2]
    if deposit_type not in (manager.content["base_type"], manager.content["quote_type"]):
        ctx.abort(MarginAbortCode.TYPE_MISMATCH, f"{deposit_type} is not a manager asset")
    if ctx.coin_type(coin_id) != deposit_type:
        ctx.abort(MarginAbortCode.TYPE_MISMATCH, f"collateral coin is not {deposit_type}", coin_id)

    deposits = manager.content["deposits"]
    deposits[deposit_type] = deposits.get(deposit_type, 0) + ctx.burn(coin_id)
    return ()


def _borrow(ctx: ExecutionContext, args: List[Any], debt_key: str, asset_key: str):
    manager_id, _registry, margin_pool_id, base_oracle_id, quote_oracle_id, _pool, amount, _clock = args
    manager = _load_manager(ctx, manager_id)
    margin_pool = ctx.borrow_mut(margin_pool_id)
    asset = manager.content[asset_key]

    if margin_pool.content["coin_type"] != asset:
        ctx.abort(MarginAbortCode.TYPE_MISMATCH, f"margin pool does not lend {asset}", margin_pool_id)
    available = margin_pool.content["liquidity"] - margin_pool.content["borrowed"]
    if amount > available:
        ctx.abort(
            MarginAbortCode.INSUFFICIENT_LIQUIDITY,
            f"margin pool has {available}, {amount} requested",
            margin_pool_id,
        )

    manager.content[debt_key] += amount
    margin_pool.content["borrowed"] += amount

    position = _position(ctx, manager, base_oracle_id, quote_oracle_id)
    if position.risk_ratio_bps >= DEFAULT_THRESHOLDS.critical_bps:
        ctx.abort(
            MarginAbortCode.RISK_TOO_HIGH,
            f"risk ratio after borrow would be {position.risk_ratio_bps} bps",
            manager_id,
        )

    ctx.mint(asset, amount, owner=ctx.sender)
    return ()


def borrow_base(ctx: ExecutionContext, args: List[Any]):
    return _borrow(ctx, args, "base_debt", "base_type")


def borrow_quote(ctx: ExecutionContext, args: List[Any]):
    return _borrow(ctx, args, "quote_debt", "quote_type")


def get_risk_ratio(ctx: ExecutionContext, args: List[Any]):
    """Risk ratio позиции в bps (debt / collateral по ценам оракулов)."""
    manager_id, _registry, _base_pool, _quote_pool, base_oracle_id, quote_oracle_id, _clock = args
    manager = _load_manager(ctx, manager_id)
    position = _position(ctx, manager, base_oracle_id, quote_oracle_id)
    return (position.risk_ratio_bps,)
