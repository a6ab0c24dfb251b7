"""Тесты для ProtocolCalls и трассы транзакции.

Coverage:
- Сигнатуры протокола регистрируются в builder
- Типизированные helpers формируют корректные InvokeEntry
- Объектные аргументы объявляются с дедупликацией (часы, пул)
- describe_transaction / export_trace проходят контракт
"""

import json

import pytest
from jsonschema import ValidationError

from src.core.config import get_network_config
from src.core.contracts import validate_transaction_trace
from src.core.domain.effects import Effects, ObjectChange, ObjectChangeType
from src.core.domain.ledger_object import OWNER_SHARED, LedgerObject
from src.core.domain.transaction import InvokeEntry, ObjectInput, ObjectOwnership, PureInput
from src.core.domain.values import PureType, ValueKind, coin_type_tag, normalize_address
from src.core.errors import TypeMismatch
from src.ptb import CommandGraphBuilder, ProtocolCalls, describe_transaction, export_trace
from src.ptb.protocol import CLOCK_INITIAL_VERSION, protocol_signatures


SUI = "0x2::sui::SUI"
USDC = "0xa1::usdc::USDC"
DEEP = "0xde::deep::DEEP"


def ledger_object(object_id, version=1, type_tag="0xa9e::x::Thing", owner=OWNER_SHARED):
    return LedgerObject(object_id=object_id, version=version, type_tag=type_tag, owner=owner)


@pytest.fixture
def network():
    return get_network_config("localnet", apex_package="0xa9e")


@pytest.fixture
def calls(network):
    return ProtocolCalls(CommandGraphBuilder(), network)


class TestProtocolSignatures:
    """Реестр сигнатур протокола."""

    def test_all_entry_points_registered(self, network):
        registry = protocol_signatures(network)

        assert len(registry) == 15
        assert network.target("apex", "purchase_access") in registry

    def test_swap_returns_three_coins(self, network):
        signature = protocol_signatures(network).get(
            network.target("deepbook_v3", "swap_base_for_quote")
        )

        assert signature.returns == (ValueKind.COIN,) * 3
        assert signature.type_parameter_count == 2

    def test_calls_register_into_builder(self, calls, network):
        assert network.target("trading_intents", "execute_intent_swap") in calls.builder.signatures


class TestProtocolCalls:
    """Типизированные вызовы."""

    def test_clock_is_shared_immutable(self, calls, network):
        ref = calls.clock()

        clock = calls.builder.inputs[ref.index]
        assert clock.object_id == normalize_address(network.clock_object_id)
        assert clock.ownership == ObjectOwnership.SHARED
        assert clock.mutable is False
        assert clock.version == CLOCK_INITIAL_VERSION

    def test_clock_declared_once(self, calls):
        assert calls.clock() == calls.clock()
        assert len(calls.builder.inputs) == 1

    def test_pay_then_swap_graph(self, calls):
        service = ledger_object("0x5e")
        pool = ledger_object("0x9001", version=4)
        usdc = ledger_object("0xc01", type_tag=coin_type_tag(USDC), owner="0xa11ce")
        sui = ledger_object("0xc02", type_tag=coin_type_tag(SUI), owner="0xa11ce")
        deep = ledger_object("0xc03", type_tag=coin_type_tag(DEEP), owner="0xa11ce")

        (payment,) = calls.builder.split_coins(calls.object_arg(usdc), [1_000])
        receipt = calls.purchase_access(service, payment)
        base_left, quote_out, deep_left = calls.swap_base_for_quote(
            SUI, USDC, pool, sui, deep, min_quote_out=500
        )
        calls.builder.transfer_objects([receipt, base_left, quote_out, deep_left], "0xa11ce")

        tx = calls.builder.build()
        swap = tx.commands[2]
        assert isinstance(swap, InvokeEntry)
        assert swap.type_arguments == (SUI, USDC)
        assert swap.result_kinds == (ValueKind.COIN,) * 3
        assert len(tx.commands) == 4

    def test_oracles_are_read_only(self, calls):
        oracle = ledger_object("0x0a1")
        calls.deposit_collateral(
            SUI,
            USDC,
            SUI,
            margin_manager=ledger_object("0x3a", owner="0xa11ce"),
            registry=ledger_object("0x3b"),
            base_oracle=oracle,
            quote_oracle=ledger_object("0x0a2"),
            collateral=ledger_object("0xc02", type_tag=coin_type_tag(SUI), owner="0xa11ce"),
        )

        declared = calls.builder.build().find_object_input("0x0a1")
        assert declared.mutable is False

    def test_risk_ratio_result_is_u64(self, calls):
        ratio = calls.get_risk_ratio(
            SUI,
            USDC,
            margin_manager=ledger_object("0x3a", owner="0xa11ce"),
            registry=ledger_object("0x3b"),
            base_margin_pool=ledger_object("0x3c"),
            quote_margin_pool=ledger_object("0x3d"),
            base_oracle=ledger_object("0x0a1"),
            quote_oracle=ledger_object("0x0a2"),
        )

        assert calls.builder.kind_of(ratio) == ValueKind.U64

    def test_object_input_passed_through(self, calls):
        intent = ObjectInput(
            object_id="0x1a", version=9, ownership=ObjectOwnership.SHARED, mutable=True
        )
        calls.cancel_intent(SUI, USDC, intent)

        tx = calls.builder.build()
        assert tx.find_object_input("0x1a").version == 9
        assert tx.commands[0].type_arguments == (SUI, USDC)

    def test_swap_with_pure_value_as_coin_is_rejected(self, calls):
        amount = calls.builder.u64(5)

        with pytest.raises(TypeMismatch):
            calls.swap_base_for_quote(
                SUI, USDC, ledger_object("0x9001"), amount, ledger_object("0xc03"), 0
            )

    def test_register_service_provider_pure_arguments(self, calls):
        calls.register_service_provider(USDC, "oracle feed", "signed prices", base_price=250)

        tx = calls.builder.build()
        command = tx.commands[0]
        assert command.type_arguments == (USDC,)
        assert command.result_kinds == ()
        assert [tx.inputs[ref.index] for ref in command.arguments] == [
            PureInput(type=PureType.STRING, value="oracle feed"),
            PureInput(type=PureType.STRING, value="signed prices"),
            PureInput(type=PureType.U64, value=250),
        ]

    def test_agent_trader_feeds_stream(self, calls):
        """Результат create_agent_trader используется как &mut agent в start_stream."""
        agent = calls.create_agent_trader()
        escrow = ledger_object("0xc01", type_tag=coin_type_tag(USDC), owner="0xa11ce")
        stream = calls.start_stream(agent, ledger_object("0x5e"), escrow, rate_per_second=3)
        calls.builder.transfer_objects([agent, stream], "0xa11ce")

        tx = calls.builder.build()
        start = tx.commands[1]
        assert tx.commands[0].arguments == ()
        assert start.arguments[0] == agent
        assert start.result_kinds == (ValueKind.OBJECT,)
        assert tx.find_object_input("0x5e").mutable is False

    def test_stream_without_escrow_coin_is_rejected(self, calls):
        agent = calls.create_agent_trader()

        with pytest.raises(TypeMismatch):
            calls.start_stream(agent, ledger_object("0x5e"), calls.builder.u64(5), 3)


class TestTrace:
    """Трасса транзакции."""

    def test_trace_matches_contract(self, calls):
        (coin,) = calls.builder.split_coins(
            calls.object_arg(ledger_object("0xc01", type_tag=coin_type_tag(USDC), owner="0xa11ce")),
            [100],
        )
        calls.purchase_access(ledger_object("0x5e"), coin)
        calls.clock()
        tx = calls.builder.build()

        trace = describe_transaction(tx, label="pay")

        assert trace["label"] == "pay"
        assert [item["input_type"] for item in trace["inputs"]] == [
            "Owned",
            "Pure",
            "SharedMut",
            "SharedImm",
        ]
        assert [command["command_type"] for command in trace["commands"]] == [
            "SplitCoins",
            "MoveCall",
        ]
        assert trace["commands"][1]["args"] == ["Input(2)", "Result(0, 0)"]
        assert trace["inputs"][1]["value"] == "0x" + (100).to_bytes(8, "little").hex()

    def test_trace_with_outputs(self, calls, tmp_path):
        calls.clock()
        tx = calls.builder.build()
        effects = Effects(
            success=True,
            gas_used=1000,
            object_changes=(
                ObjectChange(
                    change_type=ObjectChangeType.CREATED,
                    object_id="0x" + "ab" * 32,
                    object_type="0xa9e::apex::AccessReceipt",
                    owner="0x" + "cd" * 32,
                    version=2,
                ),
            ),
        )

        path = tmp_path / "trace.json"
        trace = export_trace(path, tx, effects, label="receipt")

        assert json.loads(path.read_text(encoding="utf-8")) == trace
        assert trace["outputs"]["created_objects"][0]["object_type"].endswith("AccessReceipt")
        assert trace["outputs"]["error"] is None

    def test_contract_rejects_unknown_command_type(self, calls):
        calls.clock()
        trace = describe_transaction(calls.builder.build())
        trace["commands"].append({"index": 0, "command_type": "Publish", "args": []})

        with pytest.raises(ValidationError):
            validate_transaction_trace(trace)
