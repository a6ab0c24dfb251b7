"""
ProtocolCalls — типизированные вызовы entry-функций протокола

Каждый helper добавляет в builder одну InvokeEntry-команду с
зарегистрированной сигнатурой, так что арность и грубые типы аргументов
проверяются при построении, а не на ledger.

Модули протокола (пакет NetworkConfig.apex_package):
- apex: регистрация сервисов, оплата доступа, потоки оплаты
- deepbook_v3: spot-обмены base ↔ quote, AgentTrader
- trading_intents: intents на обмен (create / execute / cancel / reclaim)
- deepbook_margin_v3: маржинальные позиции (deposit / borrow / risk ratio)

Объектные аргументы принимаются как Reference (уже объявленный input или
результат команды), ObjectInput или LedgerObject (объявляются с
дедупликацией по id).
"""

from typing import Final, Tuple, Union

from src.core.config import NetworkConfig
from src.core.domain.ledger_object import LedgerObject
from src.core.domain.transaction import InputRef, ObjectInput, ObjectOwnership, Reference, ResultRef
from src.core.domain.values import ValueKind
from src.ptb.builder import CommandGraphBuilder
from src.ptb.signatures import EntrySignature, SignatureRegistry, by_ref, by_value


# =============================================================================
# КОНСТАНТЫ
# =============================================================================

APEX_MODULE: Final[str] = "apex"
SPOT_MODULE: Final[str] = "deepbook_v3"
INTENTS_MODULE: Final[str] = "trading_intents"
MARGIN_MODULE: Final[str] = "deepbook_margin_v3"

# Начальная версия shared-объекта часов (версия неизменяемых shared-объектов
# ledger не сверяет)
CLOCK_INITIAL_VERSION: Final[int] = 1

ObjectArg = Union[InputRef, ResultRef, ObjectInput, LedgerObject]
AmountArg = Union[int, InputRef, ResultRef]


def protocol_signatures(network: NetworkConfig) -> SignatureRegistry:
    """Сигнатуры entry-функций протокола для пакета network.apex_package."""
    target = network.target
    obj, coin, u64 = ValueKind.OBJECT, ValueKind.COIN, ValueKind.U64
    clock = by_ref(obj, "clock")

    return SignatureRegistry(
        [
            # --- apex ---
            EntrySignature(
                target(APEX_MODULE, "purchase_access"),
                parameters=(by_ref(obj, "service"), by_value(coin, "payment")),
                returns=(obj,),
                description="Оплата доступа; возвращает AccessReceipt",
            ),
            EntrySignature(
                target(APEX_MODULE, "register_service_provider"),
                parameters=(
                    by_value(ValueKind.STRING, "name"),
                    by_value(ValueKind.STRING, "description"),
                    by_value(u64, "base_price"),
                ),
                type_parameter_count=1,
                description="Регистрация shared Service с ценой в монетах типа T",
            ),
            EntrySignature(
                target(APEX_MODULE, "start_stream"),
                parameters=(
                    by_ref(obj, "agent"),
                    by_ref(obj, "service"),
                    by_value(coin, "escrow_coin"),
                    by_value(u64, "rate_per_second"),
                    clock,
                ),
                returns=(obj,),
                description="Поток оплаты сервису из эскроу; возвращает PaymentStream",
            ),
            # --- spot ---
            EntrySignature(
                target(SPOT_MODULE, "create_agent_trader"),
                returns=(obj,),
                description="Новый AgentTrader отправителя",
            ),
            EntrySignature(
                target(SPOT_MODULE, "swap_base_for_quote"),
                parameters=(
                    by_ref(obj, "pool"),
                    by_value(coin, "base_coin"),
                    by_value(coin, "deep_coin"),
                    by_value(u64, "min_quote_out"),
                    clock,
                ),
                returns=(coin, coin, coin),
                type_parameter_count=2,
                description="(base остаток, quote выход, deep остаток)",
            ),
            EntrySignature(
                target(SPOT_MODULE, "swap_quote_for_base"),
                parameters=(
                    by_ref(obj, "pool"),
                    by_value(coin, "quote_coin"),
                    by_value(coin, "deep_coin"),
                    by_value(u64, "min_base_out"),
                    clock,
                ),
                returns=(coin, coin, coin),
                type_parameter_count=2,
                description="(base выход, quote остаток, deep остаток)",
            ),
            # --- intents ---
            EntrySignature(
                target(INTENTS_MODULE, "create_swap_intent"),
                parameters=(
                    by_ref(obj, "registry"),
                    by_value(coin, "input_coin"),
                    by_value(u64, "min_output"),
                    by_value(ValueKind.ADDRESS, "recipient"),
                    by_value(u64, "deadline_ms"),
                    clock,
                ),
                type_parameter_count=2,
            ),
            EntrySignature(
                target(INTENTS_MODULE, "execute_intent_swap"),
                parameters=(
                    by_ref(obj, "intent"),
                    by_ref(obj, "pool"),
                    by_ref(coin, "deep_coin"),
                    clock,
                ),
                type_parameter_count=2,
            ),
            EntrySignature(
                target(INTENTS_MODULE, "cancel_intent"),
                parameters=(by_ref(obj, "intent"), clock),
                type_parameter_count=2,
            ),
            EntrySignature(
                target(INTENTS_MODULE, "reclaim_expired"),
                parameters=(by_ref(obj, "intent"), clock),
                type_parameter_count=2,
            ),
            # --- margin ---
            EntrySignature(
                target(MARGIN_MODULE, "create_margin_manager"),
                parameters=(by_ref(obj, "registry"),),
                returns=(obj,),
                type_parameter_count=2,
            ),
            EntrySignature(
                target(MARGIN_MODULE, "deposit_collateral"),
                parameters=(
                    by_ref(obj, "margin_manager"),
                    by_ref(obj, "registry"),
                    by_ref(obj, "base_oracle"),
                    by_ref(obj, "quote_oracle"),
                    by_value(coin, "collateral"),
                    clock,
                ),
                type_parameter_count=3,
            ),
            EntrySignature(
                target(MARGIN_MODULE, "borrow_base"),
                parameters=(
                    by_ref(obj, "margin_manager"),
                    by_ref(obj, "registry"),
                    by_ref(obj, "base_margin_pool"),
                    by_ref(obj, "base_oracle"),
                    by_ref(obj, "quote_oracle"),
                    by_ref(obj, "pool"),
                    by_value(u64, "amount"),
                    clock,
                ),
                type_parameter_count=2,
            ),
            EntrySignature(
                target(MARGIN_MODULE, "borrow_quote"),
                parameters=(
                    by_ref(obj, "margin_manager"),
                    by_ref(obj, "registry"),
                    by_ref(obj, "quote_margin_pool"),
                    by_ref(obj, "base_oracle"),
                    by_ref(obj, "quote_oracle"),
                    by_ref(obj, "pool"),
                    by_value(u64, "amount"),
                    clock,
                ),
                type_parameter_count=2,
            ),
            EntrySignature(
                target(MARGIN_MODULE, "get_risk_ratio"),
                parameters=(
                    by_ref(obj, "margin_manager"),
                    by_ref(obj, "registry"),
                    by_ref(obj, "base_margin_pool"),
                    by_ref(obj, "quote_margin_pool"),
                    by_ref(obj, "base_oracle"),
                    by_ref(obj, "quote_oracle"),
                    clock,
                ),
                returns=(u64,),
                type_parameter_count=2,
                description="Risk ratio позиции в bps",
            ),
        ]
    )


class ProtocolCalls:
    """
    Типизированные вызовы протокола поверх CommandGraphBuilder.

    Регистрирует сигнатуры протокола в реестре builder при создании.
    """

    def __init__(self, builder: CommandGraphBuilder, network: NetworkConfig):
        self.builder = builder
        self.network = network
        for signature in protocol_signatures(network):
            builder.signatures.register(signature)

    # -------------------------------------------------------------------------
    # Аргументы
    # -------------------------------------------------------------------------

    def object_arg(self, value: ObjectArg, mutable: bool = True) -> Reference:
        """Объектный аргумент: ссылка как есть, объект — объявляется input."""
        if isinstance(value, (InputRef, ResultRef)):
            return value
        if isinstance(value, LedgerObject):
            value = value.as_input(mutable=mutable)
        return self.builder.object_input(value)

    def clock(self) -> InputRef:
        """Shared-объект часов (неизменяемый доступ)."""
        return self.builder.object(
            self.network.clock_object_id,
            CLOCK_INITIAL_VERSION,
            ownership=ObjectOwnership.SHARED,
            mutable=False,
        )

    def _u64(self, value: AmountArg) -> Reference:
        if isinstance(value, (InputRef, ResultRef)):
            return value
        return self.builder.u64(value)

    def _call(self, module: str, function: str, type_arguments, arguments) -> Tuple[ResultRef, ...]:
        return self.builder.invoke(
            self.network.target(module, function),
            arguments=arguments,
            type_arguments=type_arguments,
        )

    # -------------------------------------------------------------------------
    # apex
    # -------------------------------------------------------------------------

    def purchase_access(self, service: ObjectArg, payment: ObjectArg) -> ResultRef:
        """Оплата доступа к сервису; возвращает ссылку на AccessReceipt."""
        (receipt,) = self._call(
            APEX_MODULE,
            "purchase_access",
            (),
            [self.object_arg(service), self.object_arg(payment)],
        )
        return receipt

    def register_service_provider(
        self, coin_type: str, name: str, description: str, base_price: AmountArg
    ) -> None:
        """Регистрация сервиса с ценой base_price в монетах coin_type (shared Service)."""
        self._call(
            APEX_MODULE,
            "register_service_provider",
            (coin_type,),
            [self.builder.string(name), self.builder.string(description), self._u64(base_price)],
        )

    def start_stream(
        self,
        agent: ObjectArg,
        service: ObjectArg,
        escrow_coin: ObjectArg,
        rate_per_second: AmountArg,
    ) -> ResultRef:
        """
        Поток оплаты сервису: escrow_coin целиком уходит в эскроу потока.

        Returns:
            ссылка на PaymentStream
        """
        (stream,) = self._call(
            APEX_MODULE,
            "start_stream",
            (),
            [
                self.object_arg(agent),
                self.object_arg(service, mutable=False),
                self.object_arg(escrow_coin),
                self._u64(rate_per_second),
                self.clock(),
            ],
        )
        return stream

    # -------------------------------------------------------------------------
    # Spot
    # -------------------------------------------------------------------------

    def create_agent_trader(self) -> ResultRef:
        """Новый AgentTrader; возвращает ссылку на объект."""
        (trader,) = self._call(SPOT_MODULE, "create_agent_trader", (), [])
        return trader

    def swap_base_for_quote(
        self,
        base_type: str,
        quote_type: str,
        pool: ObjectArg,
        base_coin: ObjectArg,
        deep_coin: ObjectArg,
        min_quote_out: AmountArg,
    ) -> Tuple[ResultRef, ...]:
        """
        Продажа base за quote.

        Returns:
            (base остаток, quote выход, deep остаток)
        """
        return self._call(
            SPOT_MODULE,
            "swap_base_for_quote",
            (base_type, quote_type),
            [
                self.object_arg(pool),
                self.object_arg(base_coin),
                self.object_arg(deep_coin),
                self._u64(min_quote_out),
                self.clock(),
            ],
        )

    def swap_quote_for_base(
        self,
        base_type: str,
        quote_type: str,
        pool: ObjectArg,
        quote_coin: ObjectArg,
        deep_coin: ObjectArg,
        min_base_out: AmountArg,
    ) -> Tuple[ResultRef, ...]:
        """
        Покупка base за quote.

        Returns:
            (base выход, quote остаток, deep остаток)
        """
        return self._call(
            SPOT_MODULE,
            "swap_quote_for_base",
            (base_type, quote_type),
            [
                self.object_arg(pool),
                self.object_arg(quote_coin),
                self.object_arg(deep_coin),
                self._u64(min_base_out),
                self.clock(),
            ],
        )

    # -------------------------------------------------------------------------
    # Intents
    # -------------------------------------------------------------------------

    def create_swap_intent(
        self,
        coin_type: str,
        output_type: str,
        registry: ObjectArg,
        input_coin: ObjectArg,
        min_output: AmountArg,
        recipient: str,
        deadline_ms: AmountArg,
    ) -> None:
        """Эскроу input_coin в новом shared intent."""
        self._call(
            INTENTS_MODULE,
            "create_swap_intent",
            (coin_type, output_type),
            [
                self.object_arg(registry),
                self.object_arg(input_coin),
                self._u64(min_output),
                self.builder.address(recipient),
                self._u64(deadline_ms),
                self.clock(),
            ],
        )

    def execute_intent_swap(
        self,
        coin_type: str,
        output_type: str,
        intent: ObjectArg,
        pool: ObjectArg,
        deep_coin: ObjectArg,
    ) -> None:
        """
        Исполнение intent: обмен эскроу через pool с выплатой получателю.

        Ledger отклоняет исполнение, если выход меньше min_output intent или
        версия intent устарела.
        """
        self._call(
            INTENTS_MODULE,
            "execute_intent_swap",
            (coin_type, output_type),
            [
                self.object_arg(intent),
                self.object_arg(pool),
                self.object_arg(deep_coin),
                self.clock(),
            ],
        )

    def cancel_intent(self, coin_type: str, output_type: str, intent: ObjectArg) -> None:
        self._call(
            INTENTS_MODULE,
            "cancel_intent",
            (coin_type, output_type),
            [self.object_arg(intent), self.clock()],
        )

    def reclaim_expired(self, coin_type: str, output_type: str, intent: ObjectArg) -> None:
        self._call(
            INTENTS_MODULE,
            "reclaim_expired",
            (coin_type, output_type),
            [self.object_arg(intent), self.clock()],
        )

    # -------------------------------------------------------------------------
    # Margin
    # -------------------------------------------------------------------------

    def create_margin_manager(
        self, base_type: str, quote_type: str, registry: ObjectArg
    ) -> ResultRef:
        (manager,) = self._call(
            MARGIN_MODULE,
            "create_margin_manager",
            (base_type, quote_type),
            [self.object_arg(registry)],
        )
        return manager

    def deposit_collateral(
        self,
        base_type: str,
        quote_type: str,
        deposit_type: str,
        margin_manager: ObjectArg,
        registry: ObjectArg,
        base_oracle: ObjectArg,
        quote_oracle: ObjectArg,
        collateral: ObjectArg,
    ) -> None:
        self._call(
            MARGIN_MODULE,
            "deposit_collateral",
            (base_type, quote_type, deposit_type),
            [
                self.object_arg(margin_manager),
                self.object_arg(registry),
                self.object_arg(base_oracle, mutable=False),
                self.object_arg(quote_oracle, mutable=False),
                self.object_arg(collateral),
                self.clock(),
            ],
        )

    def borrow_base(
        self,
        base_type: str,
        quote_type: str,
        margin_manager: ObjectArg,
        registry: ObjectArg,
        base_margin_pool: ObjectArg,
        base_oracle: ObjectArg,
        quote_oracle: ObjectArg,
        pool: ObjectArg,
        amount: AmountArg,
    ) -> None:
        self._borrow(
            "borrow_base",
            base_type,
            quote_type,
            margin_manager,
            registry,
            base_margin_pool,
            base_oracle,
            quote_oracle,
            pool,
            amount,
        )

    def borrow_quote(
        self,
        base_type: str,
        quote_type: str,
        margin_manager: ObjectArg,
        registry: ObjectArg,
        quote_margin_pool: ObjectArg,
        base_oracle: ObjectArg,
        quote_oracle: ObjectArg,
        pool: ObjectArg,
        amount: AmountArg,
    ) -> None:
        self._borrow(
            "borrow_quote",
            base_type,
            quote_type,
            margin_manager,
            registry,
            quote_margin_pool,
            base_oracle,
            quote_oracle,
            pool,
            amount,
        )

    def _borrow(
        self,
        function: str,
        base_type: str,
        quote_type: str,
        margin_manager: ObjectArg,
        registry: ObjectArg,
        margin_pool: ObjectArg,
        base_oracle: ObjectArg,
        quote_oracle: ObjectArg,
        pool: ObjectArg,
        amount: AmountArg,
    ) -> None:
        self._call(
            MARGIN_MODULE,
            function,
            (base_type, quote_type),
            [
                self.object_arg(margin_manager),
                self.object_arg(registry),
                self.object_arg(margin_pool),
                self.object_arg(base_oracle, mutable=False),
                self.object_arg(quote_oracle, mutable=False),
                self.object_arg(pool),
                self._u64(amount),
                self.clock(),
            ],
        )

    def get_risk_ratio(
        self,
        base_type: str,
        quote_type: str,
        margin_manager: ObjectArg,
        registry: ObjectArg,
        base_margin_pool: ObjectArg,
        quote_margin_pool: ObjectArg,
        base_oracle: ObjectArg,
        quote_oracle: ObjectArg,
    ) -> ResultRef:
        """Risk ratio позиции (u64, bps) как результат команды."""
        (ratio,) = self._call(
            MARGIN_MODULE,
            "get_risk_ratio",
            (base_type, quote_type),
            [
                self.object_arg(margin_manager),
                self.object_arg(registry),
                self.object_arg(base_margin_pool),
                self.object_arg(quote_margin_pool),
                self.object_arg(base_oracle, mutable=False),
                self.object_arg(quote_oracle, mutable=False),
                self.clock(),
            ],
        )
        return ratio
