"""Тесты для SandboxLedger и модулей протокола.

Coverage:
- Атомарность: отказ любой команды — ноль эффектов
- Проверки объектных inputs (существование, владение, версия)
- Версии объектов (lamport), изменения балансов и объектов
- Оплата доступа + spot-обмен в одной транзакции
- Регистрация сервиса, AgentTrader и поток оплаты из эскроу
- Маржинальные позиции: залог, заимствование, risk ratio
"""

import pytest

from src.core.domain.effects import FailureKind, ObjectChangeType
from src.core.domain.ledger_object import OWNER_SHARED
from src.core.domain.transaction import ObjectOwnership
from src.core.domain.values import PureType, ValueKind, normalize_address
from src.ledger import (
    GAS_PER_COMMAND,
    MarginAbortCode,
    SpotAbortCode,
    create_margin_pool,
    create_margin_registry,
    create_price_oracle,
    create_service,
)
from src.ptb import CommandGraphBuilder, ProtocolCalls
from tests.unit.conftest import ALICE, BOB, CAROL, DEEP, SUI, USDC


SERVICE_PRICE = 1_000_000


@pytest.fixture
def service(sandbox, network):
    return create_service(sandbox, network, SERVICE_PRICE, USDC, provider=CAROL)


@pytest.fixture
def wallet(sandbox):
    """Монеты Alice: 5 USDC, 1000 SUI, 100 DEEP (6 знаков)."""
    return {
        "usdc": sandbox.mint_coin(ALICE, USDC, 5_000_000),
        "sui": sandbox.mint_coin(ALICE, SUI, 1_000_000_000),
        "deep": sandbox.mint_coin(ALICE, DEEP, 100),
    }


def pay_and_swap(network, service, pool, wallet, min_quote_out):
    """split → оплата доступа → split → обмен SUI на USDC → transfer."""
    calls = ProtocolCalls(CommandGraphBuilder(), network)
    builder = calls.builder
    (payment,) = builder.split_coins(calls.object_arg(wallet["usdc"]), [SERVICE_PRICE])
    receipt = calls.purchase_access(service, payment)
    (sui_part,) = builder.split_coins(calls.object_arg(wallet["sui"]), [1_000_000])
    base_left, quote_out, deep_left = calls.swap_base_for_quote(
        SUI, USDC, pool, sui_part, wallet["deep"], min_quote_out
    )
    builder.transfer_objects([receipt, base_left, quote_out, deep_left], ALICE)
    return builder.build()


class TestAtomicPayAndSwap:
    """Оплата и действие — одна транзакция."""

    @pytest.mark.asyncio
    async def test_successful_pay_and_swap(self, sandbox, network, service, pool, wallet, alice_client):
        tx = pay_and_swap(network, service, pool, wallet, min_quote_out=2_000_000)

        effects = await alice_client.submit(tx)

        assert effects.balance_delta(CAROL, USDC) == SERVICE_PRICE
        assert effects.balance_delta(ALICE, USDC) == 2_000_000 - SERVICE_PRICE
        assert effects.balance_delta(ALICE, SUI) == -1_000_000
        assert effects.balance_delta(ALICE, DEEP) == 0
        assert len(effects.created_objects("AccessReceipt")) == 1
        assert effects.gas_used == GAS_PER_COMMAND * len(tx.commands)

        assert sandbox.balance_of(CAROL, USDC) == SERVICE_PRICE
        assert sandbox.balance_of(ALICE, USDC) == 6_000_000
        assert sandbox.get(pool.object_id).content["quote_reserve"] == 10_000_000_000 - 2_000_000

    @pytest.mark.asyncio
    async def test_failed_swap_reverts_payment(self, sandbox, network, service, pool, wallet, alice_client):
        """Abort обмена отменяет и уже "выполненную" оплату."""
        tx = pay_and_swap(network, service, pool, wallet, min_quote_out=2_000_001)

        effects = await alice_client.execute(tx)

        assert effects.success is False
        assert effects.error.kind == FailureKind.MOVE_ABORT
        assert effects.error.command_index == 3
        assert effects.error.abort_code == SpotAbortCode.MIN_OUTPUT
        assert effects.error.location.endswith("::deepbook_v3")
        assert effects.balance_changes == ()
        assert effects.object_changes == ()

        assert sandbox.balance_of(CAROL, USDC) == 0
        assert sandbox.balance_of(ALICE, USDC) == 5_000_000
        assert sandbox.get(wallet["usdc"].object_id).version == wallet["usdc"].version
        assert sandbox.get(service.object_id).content["receipts_issued"] == 0

    @pytest.mark.asyncio
    async def test_insufficient_payment_aborts(self, sandbox, network, service, wallet, alice_client):
        calls = ProtocolCalls(CommandGraphBuilder(), network)
        (payment,) = calls.builder.split_coins(calls.object_arg(wallet["usdc"]), [SERVICE_PRICE - 1])
        receipt = calls.purchase_access(service, payment)
        calls.builder.transfer_objects([receipt], ALICE)

        effects = await alice_client.execute(calls.builder.build())

        assert effects.error.abort_code == SpotAbortCode.INSUFFICIENT_PAYMENT
        assert effects.error.command_index == 1

    @pytest.mark.asyncio
    async def test_dry_run_never_commits(self, sandbox, network, service, pool, wallet, alice_client):
        tx = pay_and_swap(network, service, pool, wallet, min_quote_out=0)

        effects = await alice_client.simulate(tx)

        assert effects.balance_delta(CAROL, USDC) == SERVICE_PRICE
        assert sandbox.balance_of(CAROL, USDC) == 0
        assert sandbox.get(wallet["usdc"].object_id) == wallet["usdc"]


def open_stream(network, service, coin, escrow, rate_per_second):
    """create_agent_trader → split → start_stream → transfer агента и потока."""
    calls = ProtocolCalls(CommandGraphBuilder(), network)
    agent = calls.create_agent_trader()
    (escrow_coin,) = calls.builder.split_coins(calls.object_arg(coin), [escrow])
    stream = calls.start_stream(agent, service, escrow_coin, rate_per_second)
    calls.builder.transfer_objects([agent, stream], ALICE)
    return calls.builder.build()


class TestServicesAndStreams:
    """Регистрация сервиса, AgentTrader и поток оплаты."""

    @pytest.mark.asyncio
    async def test_registered_service_sells_access(self, sandbox, network, carol_client, bob_client):
        calls = ProtocolCalls(CommandGraphBuilder(), network)
        calls.register_service_provider(USDC, "quotes", "top of book", base_price=400)

        effects = await carol_client.submit(calls.builder.build())

        (created,) = effects.created_objects("::apex::Service")
        assert created.owner == OWNER_SHARED
        service = sandbox.get(created.object_id)
        assert service.content["provider"] == CAROL
        assert service.content["name"] == "quotes"
        assert service.content["price"] == 400

        payment = sandbox.mint_coin(BOB, USDC, 1_000)
        calls = ProtocolCalls(CommandGraphBuilder(), network)
        receipt = calls.purchase_access(service, payment)
        calls.builder.transfer_objects([receipt], BOB)
        await bob_client.submit(calls.builder.build())

        assert sandbox.balance_of(CAROL, USDC) == 400
        assert sandbox.balance_of(BOB, USDC) == 600

    @pytest.mark.asyncio
    async def test_stream_escrows_payment(self, sandbox, network, service, wallet, alice_client):
        effects = await alice_client.submit(
            open_stream(network, service, wallet["usdc"], escrow=3_000_000, rate_per_second=10)
        )

        (trader,) = effects.created_objects("::deepbook_v3::AgentTrader")
        (stream,) = effects.created_objects("::apex::PaymentStream")
        assert trader.owner == ALICE
        assert sandbox.get(trader.object_id).content["streams"] == 1

        content = sandbox.get(stream.object_id).content
        assert content["escrow"] == 3_000_000
        assert content["rate_per_second"] == 10
        assert content["provider"] == CAROL
        assert content["agent"] == trader.object_id
        assert content["started_ms"] == sandbox.now_ms()
        assert effects.balance_delta(ALICE, USDC) == -3_000_000

    @pytest.mark.asyncio
    async def test_zero_rate_aborts(self, sandbox, network, service, wallet, alice_client):
        effects = await alice_client.execute(
            open_stream(network, service, wallet["usdc"], escrow=1_000, rate_per_second=0)
        )

        assert effects.error.abort_code == SpotAbortCode.INVALID_RATE
        assert effects.error.command_index == 2
        assert effects.object_changes == ()
        assert sandbox.balance_of(ALICE, USDC) == 5_000_000

    @pytest.mark.asyncio
    async def test_escrow_in_wrong_coin_aborts(self, sandbox, network, service, wallet, alice_client):
        effects = await alice_client.execute(
            open_stream(network, service, wallet["sui"], escrow=1_000, rate_per_second=1)
        )

        assert effects.error.kind == FailureKind.MOVE_ABORT
        assert effects.error.abort_code == SpotAbortCode.TYPE_MISMATCH
        assert effects.error.location.endswith("::apex")


class TestInputChecks:
    """Проверки объектных inputs."""

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, sandbox, wallet, alice_client):
        builder = CommandGraphBuilder()
        coin = builder.object(wallet["sui"].object_id, wallet["sui"].version + 5)
        (part,) = builder.split_coins(coin, [1])
        builder.transfer_objects([part], BOB)

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.OBJECT_VERSION_CONFLICT
        assert effects.error.object_id == wallet["sui"].object_id
        assert effects.error.command_index is None

    @pytest.mark.asyncio
    async def test_foreign_coin_is_not_owned(self, sandbox, wallet, bob_client):
        builder = CommandGraphBuilder()
        (part,) = builder.split_coins(builder.object_input(wallet["sui"].as_input()), [1])
        builder.transfer_objects([part], BOB)

        effects = await bob_client.execute(builder.build())

        assert effects.error.kind == FailureKind.OBJECT_NOT_OWNED

    @pytest.mark.asyncio
    async def test_missing_object(self, alice_client):
        builder = CommandGraphBuilder()
        builder.transfer_objects([builder.object("0xdead", 1)], BOB)

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.OBJECT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_shared_object_passed_as_owned_is_invalid(self, pool, alice_client):
        builder = CommandGraphBuilder()
        builder.transfer_objects([builder.object(pool.object_id, pool.version)], BOB)

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.INVALID_TRANSACTION

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, wallet, alice_client):
        builder = CommandGraphBuilder()
        coin = builder.object_input(wallet["deep"].as_input())
        parts = builder.split_coins(coin, [60, 60])
        builder.transfer_objects(list(parts), BOB)

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.INSUFFICIENT_BALANCE
        assert effects.error.command_index == 0

    @pytest.mark.asyncio
    async def test_unknown_function(self, alice_client):
        builder = CommandGraphBuilder()
        builder.invoke("0x77::market::open", result_kinds=[])

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.FUNCTION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_malformed_bytes_rejected(self, sandbox):
        effects = await sandbox.submit(b"\x01\x05", ALICE)

        assert effects.success is False
        assert effects.error.kind == FailureKind.INVALID_TRANSACTION

    @pytest.mark.asyncio
    async def test_same_transaction_executes_once(self, sandbox, alice_client):
        builder = CommandGraphBuilder()
        builder.object("0x6", 1, ownership=ObjectOwnership.SHARED, mutable=False)
        builder.make_move_vec([builder.u64(1)])
        tx = builder.build()

        first = await alice_client.execute(tx)
        second = await alice_client.execute(tx)

        assert first.success is True
        assert second.error.kind == FailureKind.INVALID_TRANSACTION
        assert "already executed" in second.error.message


class TestVersionsAndChanges:
    """Версии и изменения объектов."""

    @pytest.mark.asyncio
    async def test_lamport_version_and_changes(self, sandbox, wallet, alice_client):
        builder = CommandGraphBuilder()
        coin = builder.object_input(wallet["sui"].as_input())
        (part,) = builder.split_coins(coin, [250])
        builder.transfer_objects([part], BOB)

        effects = await alice_client.submit(builder.build())

        expected_version = wallet["sui"].version + 1
        mutated = effects.object_change(wallet["sui"].object_id)
        assert mutated.change_type == ObjectChangeType.MUTATED
        assert mutated.version == expected_version
        (created,) = effects.created_objects()
        assert created.owner == BOB
        assert created.version == expected_version

        assert effects.balance_delta(ALICE, SUI) == -250
        assert effects.balance_delta(BOB, SUI) == 250
        assert sandbox.get(wallet["sui"].object_id).version == expected_version
        assert sandbox.balance_of(BOB, SUI) == 250

    @pytest.mark.asyncio
    async def test_merge_deletes_source(self, sandbox, wallet, alice_client):
        extra = sandbox.mint_coin(ALICE, SUI, 7)
        builder = CommandGraphBuilder()
        builder.merge_coins(
            builder.object_input(wallet["sui"].as_input()),
            [builder.object_input(extra.as_input())],
        )

        effects = await alice_client.submit(builder.build())

        assert effects.object_change(extra.object_id).change_type == ObjectChangeType.DELETED
        assert effects.balance_changes == ()
        assert sandbox.get(extra.object_id) is None
        assert sandbox.get(wallet["sui"].object_id).content["balance"] == 1_000_000_007

    @pytest.mark.asyncio
    async def test_read_only_object_cannot_be_mutated(self, sandbox, network, alice_client):
        target = f"{network.apex_package}::gadget::touch"

        def touch(ctx, args):
            ctx.borrow_mut(args[0]).content["touched"] = True
            return ()

        sandbox.register(target, touch)
        thing = sandbox.create_shared_object("0xa9e::gadget::Thing", {})
        builder = CommandGraphBuilder()
        ref = builder.object_input(thing.as_input(mutable=False))
        builder.invoke(target, [ref], result_kinds=[])

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.INVALID_TRANSACTION
        assert effects.error.object_id == thing.object_id

    @pytest.mark.asyncio
    async def test_entry_function_error_becomes_failure(self, sandbox, network, alice_client):
        """Ошибка внутри entry-функции — структурированный отказ, а не исключение."""
        target = f"{network.apex_package}::gadget::read_field"

        def read_field(ctx, args):
            return (ctx.get(args[0]).content["missing"],)

        sandbox.register(target, read_field)
        thing = sandbox.create_shared_object("0xa9e::gadget::Thing", {})
        builder = CommandGraphBuilder()
        builder.make_move_vec([builder.u64(1)])
        ref = builder.object_input(thing.as_input(mutable=False))
        builder.invoke(target, [ref], result_kinds=[ValueKind.U64])

        effects = await alice_client.execute(builder.build())

        assert effects.success is False
        assert effects.error.kind == FailureKind.INVALID_TRANSACTION
        assert effects.error.command_index == 1
        assert effects.error.location.endswith("::gadget")
        assert "KeyError" in effects.error.message

    @pytest.mark.asyncio
    async def test_non_pool_object_as_pool_aborts(
        self, sandbox, network, service, wallet, alice_client
    ):
        calls = ProtocolCalls(CommandGraphBuilder(), network)
        builder = calls.builder
        (sell,) = builder.split_coins(calls.object_arg(wallet["sui"]), [1_000_000])
        outputs = calls.swap_base_for_quote(SUI, USDC, service, sell, wallet["deep"], 0)
        builder.transfer_objects(list(outputs), ALICE)

        effects = await alice_client.execute(builder.build())

        assert effects.error.kind == FailureKind.MOVE_ABORT
        assert effects.error.abort_code == SpotAbortCode.TYPE_MISMATCH
        assert effects.error.object_id == service.object_id
        assert sandbox.balance_of(ALICE, SUI) == wallet["sui"].content["balance"]


class TestQueries:
    """Чтение объектов."""

    @pytest.mark.asyncio
    async def test_query_objects_paginates_by_id(self, sandbox):
        created = [sandbox.create_shared_object("0xa9e::gadget::Thing", {"n": n}) for n in range(3)]
        sandbox.create_shared_object("0xa9e::gadget::Other", {})

        first = await sandbox.query_objects("::gadget::Thing", None, 2)
        second = await sandbox.query_objects("::gadget::Thing", first.next_cursor, 2)

        assert [obj.object_id for obj in first.objects + second.objects] == [
            obj.object_id for obj in created
        ]
        assert second.next_cursor is None

    def test_clock_object(self, sandbox):
        clock = sandbox.get("0x6")

        assert clock.owner == OWNER_SHARED
        sandbox.advance_time_ms(500)
        assert sandbox.get("0x6").content["timestamp_ms"] == sandbox.now_ms()

    def test_mint_negative_amount_rejected(self, sandbox):
        with pytest.raises(ValueError):
            sandbox.mint_coin(ALICE, SUI, -1)

    def test_coins_of(self, sandbox, wallet):
        coins = sandbox.coins_of(ALICE, SUI)

        assert [coin.object_id for coin in coins] == [wallet["sui"].object_id]
        assert coins[0].owner == normalize_address(ALICE)


@pytest.fixture
def margin_market(sandbox, network):
    return {
        "registry": create_margin_registry(sandbox, network),
        "base_oracle": create_price_oracle(sandbox, network, SUI, 2_000_000, 6),
        "quote_oracle": create_price_oracle(sandbox, network, USDC, 1_000_000, 6),
        "base_pool": create_margin_pool(sandbox, network, SUI, 1_000_000_000),
        "quote_pool": create_margin_pool(sandbox, network, USDC, 10_000_000),
    }


class TestMargin:
    """Маржинальная позиция на ledger."""

    async def _open_manager(self, sandbox, network, margin_market, client):
        calls = ProtocolCalls(CommandGraphBuilder(), network)
        calls.create_margin_manager(SUI, USDC, margin_market["registry"])
        effects = await client.submit(calls.builder.build())
        (created,) = effects.created_objects("MarginManager")
        assert created.owner == client.sender
        return sandbox.get(created.object_id)

    def _borrow_and_measure(self, sandbox, network, margin_market, pool, manager, collateral, amount):
        """deposit → borrow_quote → get_risk_ratio одной транзакцией."""
        calls = ProtocolCalls(CommandGraphBuilder(), network)
        common = dict(
            margin_manager=manager,
            # реестр изменён созданием менеджера: нужна текущая версия
            registry=sandbox.get(margin_market["registry"].object_id),
            base_oracle=margin_market["base_oracle"],
            quote_oracle=margin_market["quote_oracle"],
        )
        calls.deposit_collateral(SUI, USDC, SUI, collateral=collateral, **common)
        calls.borrow_quote(
            SUI,
            USDC,
            quote_margin_pool=margin_market["quote_pool"],
            pool=pool,
            amount=amount,
            **common,
        )
        ratio = calls.get_risk_ratio(
            SUI,
            USDC,
            base_margin_pool=margin_market["base_pool"],
            quote_margin_pool=margin_market["quote_pool"],
            **common,
        )
        return calls.builder.build(), ratio

    @pytest.mark.asyncio
    async def test_deposit_borrow_and_risk_ratio(self, sandbox, network, margin_market, pool, alice_client):
        manager = await self._open_manager(sandbox, network, margin_market, alice_client)
        collateral = sandbox.mint_coin(ALICE, SUI, 1_000_000)
        tx, ratio = self._borrow_and_measure(
            sandbox, network, margin_market, pool, manager, collateral, 1_000_000
        )

        effects = await alice_client.submit(tx)

        # 1 SUI × 2.0 = 2 USDC залога, 1 USDC долга → 50%
        assert effects.output(ratio.command_index) == 5_000
        assert effects.balance_delta(ALICE, USDC) == 1_000_000
        state = sandbox.get(manager.object_id).content
        assert state["deposits"] == {SUI: 1_000_000}
        assert state["quote_debt"] == 1_000_000

    @pytest.mark.asyncio
    async def test_borrow_into_critical_risk_aborts(self, sandbox, network, margin_market, pool, alice_client):
        manager = await self._open_manager(sandbox, network, margin_market, alice_client)
        collateral = sandbox.mint_coin(ALICE, SUI, 1_000_000)
        tx, _ = self._borrow_and_measure(
            sandbox, network, margin_market, pool, manager, collateral, 1_800_000
        )

        effects = await alice_client.execute(tx)

        assert effects.error.abort_code == MarginAbortCode.RISK_TOO_HIGH
        assert effects.error.command_index == 1
        assert sandbox.get(manager.object_id).content["deposits"] == {}
        assert sandbox.balance_of(ALICE, SUI) == 1_000_000

    @pytest.mark.asyncio
    async def test_borrow_beyond_pool_liquidity_aborts(self, sandbox, network, margin_market, pool, alice_client):
        manager = await self._open_manager(sandbox, network, margin_market, alice_client)
        collateral = sandbox.mint_coin(ALICE, SUI, 100_000_000)
        tx, _ = self._borrow_and_measure(
            sandbox, network, margin_market, pool, manager, collateral, 10_000_001
        )

        effects = await alice_client.execute(tx)

        assert effects.error.abort_code == MarginAbortCode.INSUFFICIENT_LIQUIDITY


class TestPureValues:
    """Pure-значения доходят до entry-функций декодированными."""

    @pytest.mark.asyncio
    async def test_entry_function_receives_values(self, sandbox, network, alice_client):
        seen = []
        target = f"{network.apex_package}::gadget::echo"

        def echo(ctx, args):
            seen.extend(args)
            return tuple(args)

        sandbox.register(target, echo)
        builder = CommandGraphBuilder()
        results = builder.invoke(
            target,
            [builder.u64(7), builder.address("0xb0b"), builder.pure(PureType.BOOL, True)],
            result_kinds=[ValueKind.U64, ValueKind.ADDRESS, ValueKind.BOOL],
        )

        effects = await alice_client.submit(builder.build())

        assert seen == [7, BOB, True]
        assert effects.output(results[0].command_index, 2) is True
        assert effects.output(0, 1) == BOB
