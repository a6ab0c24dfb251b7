"""Тесты для канонического Encoder.

Coverage:
- Round-trip decode(encode(t)) == t
- Каноничность (фиксированная ширина, порядок полей)
- Отклонение повреждённых байтов и нарушений графа (MalformedTransaction)
- Digest транзакции
"""

import pytest

from src.core.domain.transaction import (
    InputRef,
    InvokeEntry,
    MergeCoins,
    ObjectInput,
    ObjectOwnership,
    PureInput,
    ResultRef,
    SplitCoins,
    Transaction,
    TransferObjects,
)
from src.core.domain.values import PureType, ValueKind
from src.core.errors import MalformedTransaction
from src.ptb.builder import CommandGraphBuilder
from src.ptb.encoder import (
    SCHEMA_VERSION,
    decode,
    encode,
    encode_pure_value,
    transaction_digest,
)
from src.ptb.signatures import EntrySignature, SignatureRegistry, by_ref, by_value


SUI_COIN = "0x2::coin::Coin<0x2::sui::SUI>"


@pytest.fixture
def rich_transaction():
    """Транзакция со всеми видами inputs и команд."""
    builder = CommandGraphBuilder()
    coin = builder.object("0xc01", 7, type_tag=SUI_COIN)
    clock = builder.object("0x6", 1, ownership=ObjectOwnership.SHARED, mutable=False)
    builder.pure(PureType.BOOL, True)
    builder.pure(PureType.U8, 255)
    builder.pure(PureType.U128, 2**100)
    builder.pure(PureType.U256, 2**255)
    builder.string("привет")
    builder.pure(PureType.BYTES, b"\x00\xff")

    first, second, third = builder.split_coins(coin, [10, 20, 30])
    builder.merge_coins(first, [second])
    vector = builder.make_move_vec([first], element_type=SUI_COIN)
    (result,) = builder.invoke(
        "0xa9e::vault::deposit_all",
        [vector, clock],
        type_arguments=["0x2::sui::SUI"],
        result_kinds=[ValueKind.U64],
    )
    builder.transfer_objects([third], "0xb0b")
    return builder.build()


class TestRoundTrip:
    """decode(encode(t)) == t."""

    def test_round_trip_rich_transaction(self, rich_transaction):
        assert decode(encode(rich_transaction)) == rich_transaction

    def test_round_trip_empty_transaction(self):
        tx = Transaction()

        assert decode(encode(tx)) == tx
        assert encode(tx) == bytes([SCHEMA_VERSION, 0, 0])

    def test_round_trip_with_signatures(self):
        signatures = SignatureRegistry(
            [
                EntrySignature(
                    "0xa9e::apex::purchase_access",
                    parameters=(by_ref(ValueKind.OBJECT), by_value(ValueKind.COIN)),
                    returns=(ValueKind.OBJECT,),
                )
            ]
        )
        builder = CommandGraphBuilder(signatures)
        service = builder.object("0x5e", 3, ownership=ObjectOwnership.SHARED)
        coin = builder.object("0xc01", 1, type_tag=SUI_COIN)
        (payment,) = builder.split_coins(coin, [5])
        (receipt,) = builder.invoke("0xa9e::apex::purchase_access", [service, payment])
        builder.transfer_objects([receipt], "0xb0b")
        tx = builder.build()

        assert decode(encode(tx), signatures) == tx


class TestCanonicalForm:
    """Фиксированная ширина и порядок полей."""

    def test_u64_is_little_endian_fixed_width(self):
        assert encode_pure_value(PureType.U64, 1) == b"\x01" + b"\x00" * 7

    def test_address_is_32_bytes(self):
        assert encode_pure_value(PureType.ADDRESS, "0x" + "00" * 31 + "06") == b"\x00" * 31 + b"\x06"

    def test_string_is_length_prefixed(self):
        assert encode_pure_value(PureType.STRING, "ab") == b"\x02ab"

    def test_input_and_command_layout(self):
        tx = Transaction(
            inputs=(PureInput(type=PureType.U16, value=513),),
            commands=(),
        )

        # version, 1 input, pure tag, u16 tag, value LE, 0 commands
        assert encode(tx) == bytes([SCHEMA_VERSION, 1, 0, 1, 0x01, 0x02, 0])

    def test_equal_graphs_encode_equally(self, rich_transaction):
        copy = Transaction.model_validate(rich_transaction.model_dump())

        assert encode(copy) == encode(rich_transaction)

    def test_digest_is_blake2b_of_bytes(self, rich_transaction):
        digest = transaction_digest(rich_transaction)

        assert digest == transaction_digest(encode(rich_transaction))
        assert len(digest) == 64


class TestMalformedInput:
    """Повреждённые байты отклоняются, а не "чинятся"."""

    def test_truncated_bytes(self, rich_transaction):
        data = encode(rich_transaction)

        with pytest.raises(MalformedTransaction):
            decode(data[:-1])

    def test_trailing_bytes(self, rich_transaction):
        with pytest.raises(MalformedTransaction) as exc_info:
            decode(encode(rich_transaction) + b"\x00")

        assert "trailing" in exc_info.value.reason

    def test_unknown_schema_version(self):
        with pytest.raises(MalformedTransaction):
            decode(bytes([99, 0, 0]))

    def test_unknown_command_tag(self):
        with pytest.raises(MalformedTransaction) as exc_info:
            decode(bytes([SCHEMA_VERSION, 0, 1, 4]))

        assert exc_info.value.offset == 3

    def test_invalid_bool_byte(self):
        with pytest.raises(MalformedTransaction):
            decode(bytes([SCHEMA_VERSION, 1, 0, 6, 2, 0]))

    def test_non_canonical_uleb(self):
        with pytest.raises(MalformedTransaction):
            decode(bytes([SCHEMA_VERSION, 0x80, 0x00, 0]))

    def test_non_bytes_input(self):
        with pytest.raises(MalformedTransaction):
            decode("not bytes")

    def test_forward_reference_is_rejected(self):
        tx = Transaction(
            inputs=(ObjectInput(object_id="0xc01", version=1, type_tag=SUI_COIN),),
            commands=(
                TransferObjects(objects=(ResultRef(command_index=1),), recipient=InputRef(index=0)),
                SplitCoins(source=InputRef(index=0), amounts=(InputRef(index=0),)),
            ),
        )

        with pytest.raises(MalformedTransaction) as exc_info:
            decode(encode(tx))

        assert "command graph" in exc_info.value.reason

    def test_dangling_input_is_rejected(self):
        tx = Transaction(
            inputs=(),
            commands=(MergeCoins(destination=InputRef(index=0), sources=(InputRef(index=1),)),),
        )

        with pytest.raises(MalformedTransaction):
            decode(encode(tx))

    def test_double_consumption_is_rejected(self):
        tx = Transaction(
            inputs=(
                ObjectInput(object_id="0xc01", version=1, type_tag=SUI_COIN),
                PureInput(type=PureType.U64, value=5),
                PureInput(type=PureType.ADDRESS, value="0xb0b"),
            ),
            commands=(
                SplitCoins(source=InputRef(index=0), amounts=(InputRef(index=1),)),
                TransferObjects(objects=(ResultRef(command_index=0),), recipient=InputRef(index=2)),
                TransferObjects(objects=(ResultRef(command_index=0),), recipient=InputRef(index=2)),
            ),
        )

        with pytest.raises(MalformedTransaction):
            decode(encode(tx))

    def test_unknown_targets_borrow_without_registry(self):
        """Без реестра аргументы неизвестных вызовов заимствуются: повторная передача допустима."""
        target = "0xa9e::vault::lock"
        tx = Transaction(
            inputs=(
                ObjectInput(object_id="0xc01", version=1, type_tag=SUI_COIN),
                PureInput(type=PureType.U64, value=5),
            ),
            commands=(
                SplitCoins(source=InputRef(index=0), amounts=(InputRef(index=1),)),
                InvokeEntry(target=target, arguments=(ResultRef(command_index=0),)),
                InvokeEntry(target=target, arguments=(ResultRef(command_index=0),)),
            ),
        )
        signatures = SignatureRegistry([EntrySignature(target, (by_value(ValueKind.COIN),))])

        assert decode(encode(tx)) == tx
        with pytest.raises(MalformedTransaction):
            decode(encode(tx), signatures)
