"""
Тесты для базовых доменных моделей: Transaction, Effects, LedgerObject, Intent

Проверяет:
1. Создание и валидацию моделей Pydantic
2. Нормализацию адресов и target
3. Immutability (frozen=True)
4. Атомарность Effects (неуспех — ни одного изменения)
5. Граничные случаи и невалидные данные
"""

import pytest
from pydantic import ValidationError

from src.core.domain import (
    OWNER_SHARED,
    BalanceChange,
    CommandOutput,
    Effects,
    ExecutionFailure,
    FailureKind,
    InputRef,
    Intent,
    IntentStatus,
    InvokeEntry,
    LedgerObject,
    ObjectChange,
    ObjectChangeType,
    ObjectInput,
    ObjectOwnership,
    PureInput,
    PureType,
    SplitCoins,
    Transaction,
    ValueKind,
    coin_type_of,
    coin_type_tag,
    kind_of_object_type,
    normalize_address,
    short_address,
    split_target,
)


# =============================================================================
# VALUES
# =============================================================================


class TestAddresses:
    """Нормализация адресов и target."""

    def test_normalize_pads_to_32_bytes(self):
        assert normalize_address("0x6") == "0x" + "0" * 63 + "6"

    def test_normalize_lowercases(self):
        assert normalize_address("0xABC") == normalize_address("0xabc")

    @pytest.mark.parametrize("value", ["0x", "0xzz", "0x" + "1" * 65, 6])
    def test_invalid_address(self, value):
        with pytest.raises(ValueError):
            normalize_address(value)

    def test_short_address(self):
        assert short_address("0x" + "0" * 63 + "6") == "0x6"
        assert short_address("0x0") == "0x0"

    def test_split_target(self):
        package, module, function = split_target("0xa9e::apex::purchase_access")

        assert package == normalize_address("0xa9e")
        assert (module, function) == ("apex", "purchase_access")

    def test_invalid_target(self):
        with pytest.raises(ValueError):
            split_target("apex::purchase_access")

    def test_coin_type_helpers(self):
        tag = coin_type_tag("0x2::sui::SUI")

        assert coin_type_of(tag) == "0x2::sui::SUI"
        assert coin_type_of("0xa9e::apex::Service") is None
        assert kind_of_object_type(tag) == ValueKind.COIN
        assert kind_of_object_type(None) == ValueKind.OBJECT

    def test_resource_kinds(self):
        assert ValueKind.COIN.is_resource
        assert ValueKind.OBJECT_VECTOR.is_resource
        assert not ValueKind.U64.is_resource
        assert not ValueKind.OBJECT_VECTOR.is_object_like


# =============================================================================
# TRANSACTION
# =============================================================================


class TestTransactionModels:
    """Inputs, references, commands."""

    def test_pure_input_range(self):
        assert PureInput(type=PureType.U8, value=255).kind == ValueKind.U8

        with pytest.raises(ValidationError):
            PureInput(type=PureType.U8, value=256)

    def test_bool_is_not_an_integer(self):
        with pytest.raises(ValidationError):
            PureInput(type=PureType.U64, value=True)

    def test_address_input_is_normalized(self):
        item = PureInput(type=PureType.ADDRESS, value="0xb0b")

        assert item.value == normalize_address("0xb0b")

    def test_object_input_defaults(self):
        item = ObjectInput(object_id="0xc01", version=3)

        assert item.ownership == ObjectOwnership.OWNED
        assert item.mutable is True
        assert item.kind == ValueKind.OBJECT

    def test_negative_version_rejected(self):
        with pytest.raises(ValidationError):
            ObjectInput(object_id="0xc01", version=-1)

    def test_split_requires_amounts(self):
        with pytest.raises(ValidationError):
            SplitCoins(source=InputRef(index=0), amounts=())

    def test_invoke_target_is_normalized(self):
        command = InvokeEntry(target="0xA9E::apex::purchase_access")

        assert command.target == f"{normalize_address('0xa9e')}::apex::purchase_access"

    def test_reference_repr(self):
        assert repr(InputRef(index=2)) == "Input(2)"

    def test_transaction_is_frozen(self):
        tx = Transaction()

        with pytest.raises(ValidationError):
            tx.inputs = ()

    def test_find_object_input(self):
        tx = Transaction(
            inputs=(
                PureInput(type=PureType.U64, value=1),
                ObjectInput(object_id="0xc01", version=1),
            )
        )

        assert tx.find_object_input("0x0c01").version == 1
        assert tx.find_object_input("0xc02") is None

    def test_json_round_trip(self):
        tx = Transaction(
            inputs=(ObjectInput(object_id="0xc01", version=1), PureInput(type=PureType.U64, value=5)),
            commands=(SplitCoins(source=InputRef(index=0), amounts=(InputRef(index=1),)),),
        )

        assert Transaction.model_validate_json(tx.model_dump_json()) == tx


# =============================================================================
# EFFECTS
# =============================================================================


class TestEffects:
    """Effects и инвариант all-or-nothing."""

    @pytest.fixture
    def effects(self) -> Effects:
        return Effects(
            success=True,
            command_outputs=(CommandOutput(command_index=1, values=(5000, True)),),
            balance_changes=(
                BalanceChange(owner="0xa", coin_type="0x2::sui::SUI", amount=-7),
                BalanceChange(owner="0xa", coin_type="0x2::sui::SUI", amount=2),
            ),
            object_changes=(
                ObjectChange(
                    change_type=ObjectChangeType.CREATED,
                    object_id="0xr",
                    object_type="0xa9e::apex::AccessReceipt",
                    version=4,
                ),
            ),
        )

    def test_balance_delta_sums_changes(self, effects):
        assert effects.balance_delta("0xa", "0x2::sui::SUI") == -5
        assert effects.balance_delta("0xb", "0x2::sui::SUI") == 0

    def test_outputs(self, effects):
        assert effects.output(1) == 5000
        assert effects.output(1, 1) is True

        with pytest.raises(KeyError):
            effects.output(1, 2)
        with pytest.raises(KeyError):
            effects.output(0)

    def test_created_objects(self, effects):
        assert len(effects.created_objects("AccessReceipt")) == 1
        assert effects.created_objects("Intent") == []
        assert effects.object_change("0xr").version == 4

    def test_failure_without_error_rejected(self):
        with pytest.raises(ValidationError):
            Effects(success=False)

    def test_success_with_error_rejected(self):
        with pytest.raises(ValidationError):
            Effects(
                success=True,
                error=ExecutionFailure(kind=FailureKind.MOVE_ABORT, message="abort"),
            )

    def test_failure_carries_no_changes(self):
        with pytest.raises(ValidationError):
            Effects(
                success=False,
                error=ExecutionFailure(kind=FailureKind.MOVE_ABORT, message="abort"),
                command_outputs=(CommandOutput(command_index=0, values=(1,)),),
            )

    def test_failure_description(self):
        failure = ExecutionFailure(
            kind=FailureKind.MOVE_ABORT,
            message="output below minimum",
            command_index=3,
            abort_code=2,
            location="0xa9e::deepbook_v3",
        )

        assert str(failure) == (
            "move_abort command=3 abort_code=2 location=0xa9e::deepbook_v3: output below minimum"
        )


# =============================================================================
# LEDGER OBJECTS AND INTENTS
# =============================================================================


def intent_object(**content_overrides) -> LedgerObject:
    content = {
        "creator": "0xa11ce",
        "coin_type": "0x2::sui::SUI",
        "escrow_amount": 1_000_000,
        "output_type": "0xa1::usdc::USDC",
        "min_output": 2_000_000,
        "recipient": "0xa11ce",
        "deadline_ms": 10_000,
        "status": "open",
    }
    content.update(content_overrides)
    return LedgerObject(
        object_id="0x1a",
        version=5,
        type_tag="0xa9e::trading_intents::SwapIntent<0x2::sui::SUI, 0xa1::usdc::USDC>",
        owner=OWNER_SHARED,
        content=content,
    )


class TestLedgerObject:
    """LedgerObject → ObjectInput."""

    def test_shared_object_input(self):
        obj = intent_object()

        item = obj.as_input(mutable=False)
        assert item.ownership == ObjectOwnership.SHARED
        assert item.mutable is False
        assert item.version == 5

    def test_owned_coin_input(self):
        coin = LedgerObject(
            object_id="0xc01", version=2, type_tag=coin_type_tag("0x2::sui::SUI"), owner="0xa"
        )

        item = coin.as_input()
        assert item.ownership == ObjectOwnership.OWNED
        assert item.kind == ValueKind.COIN


class TestIntent:
    """Intent из объекта ledger."""

    def test_from_ledger_object(self):
        intent = Intent.from_ledger_object(intent_object())

        assert intent.intent_id == normalize_address("0x1a")
        assert intent.creator == normalize_address("0xa11ce")
        assert intent.input_commitment.amount == 1_000_000
        assert intent.status == IntentStatus.OPEN
        assert intent.version == 5
        assert intent.filled_by is None

    def test_filled_intent(self):
        intent = Intent.from_ledger_object(
            intent_object(status="filled", filled_by="0xb0b", filled_output=2_000_000)
        )

        assert intent.status.is_terminal
        assert intent.filled_output == 2_000_000

    def test_not_an_intent(self):
        obj = LedgerObject(
            object_id="0x5e", version=1, type_tag="0xa9e::apex::Service", owner=OWNER_SHARED
        )

        with pytest.raises(ValueError):
            Intent.from_ledger_object(obj)

    def test_zero_escrow_rejected(self):
        with pytest.raises(ValidationError):
            Intent.from_ledger_object(intent_object(escrow_amount=0))

    def test_intent_is_frozen(self):
        intent = Intent.from_ledger_object(intent_object())

        with pytest.raises(ValidationError):
            intent.status = IntentStatus.FILLED
