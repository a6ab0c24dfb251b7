"""
Config — явная конфигурация сети, клиента ledger и builder

Никакого процессного mutable-состояния: адреса пакетов, RPC endpoint и
таймауты передаются в конструкторы builder / клиента как frozen-значения.
Смена пакета протокола — это новый конфиг (with_apex_package), а не
модификация глобальной константы.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Final, Optional


# Системный shared-объект часов ledger
CLOCK_OBJECT_ID: Final[str] = "0x6"

# Нулевой адрес пакета (протокол ещё не опубликован)
UNPUBLISHED_PACKAGE: Final[str] = "0x0"


class Network(str, Enum):
    """Сеть ledger."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    LOCALNET = "localnet"


@dataclass(frozen=True)
class TokenTypes:
    """Полные типы монет, используемых протоколом."""

    sui: str = "0x2::sui::SUI"
    usdc: str = UNPUBLISHED_PACKAGE
    usdt: str = UNPUBLISHED_PACKAGE
    deep: str = UNPUBLISHED_PACKAGE


@dataclass(frozen=True)
class NetworkConfig:
    """
    Конфигурация сети.

    Attributes:
        network: идентификатор сети
        rpc_url: endpoint full node
        deepbook_package: пакет DeepBook spot
        margin_package: пакет DeepBook margin
        apex_package: пакет протокола (entry points intent / payments / margin)
        tokens: типы монет
        clock_object_id: id объекта часов
    """

    network: Network
    rpc_url: str
    deepbook_package: str
    margin_package: str
    apex_package: str = UNPUBLISHED_PACKAGE
    tokens: TokenTypes = field(default_factory=TokenTypes)
    clock_object_id: str = CLOCK_OBJECT_ID

    def with_apex_package(self, address: str) -> "NetworkConfig":
        """Новый конфиг с опубликованным адресом пакета протокола."""
        return replace(self, apex_package=address)

    def target(self, module: str, function: str) -> str:
        """Полный target entry-функции протокола: package::module::function."""
        return f"{self.apex_package}::{module}::{function}"


NETWORKS: Final[dict[Network, NetworkConfig]] = {
    Network.MAINNET: NetworkConfig(
        network=Network.MAINNET,
        rpc_url="https://fullnode.mainnet.sui.io:443",
        deepbook_package="0x2d93777cc8b67c064b495e8606f2f8f5fd578450347bbe7b36e0bc03963c1c40",
        margin_package="0x97d9473771b01f77b0940c589484184b49f6444627ec121314fae6a6d36fb86b",
        tokens=TokenTypes(
            usdc="0xdba34672e30cb065b1f93e3ab55318768fd6fef66c15942c9f7cb846e2f900e7::usdc::USDC",
            usdt="0xc060006111016b8a020ad5b33834984a437aaa7d3c74c18e09a95d48aceab08c::coin::COIN",
            deep="0xdeeb7a4662eec9f2f3def03fb937a663dddaa2e215b8078a284d026b7946c270::deep::DEEP",
        ),
    ),
    Network.TESTNET: NetworkConfig(
        network=Network.TESTNET,
        rpc_url="https://fullnode.testnet.sui.io:443",
        deepbook_package="0x22be4cade64bf2d02412c7e8d0e8beea2f78828b948118d46735315409371a3c",
        margin_package="0xd6a42f4df4db73d68cbeb52be66698d2fe6a9464f45ad113ca52b0c6ebd918b6",
    ),
    Network.LOCALNET: NetworkConfig(
        network=Network.LOCALNET,
        rpc_url="http://127.0.0.1:9000",
        deepbook_package=UNPUBLISHED_PACKAGE,
        margin_package=UNPUBLISHED_PACKAGE,
    ),
}


def get_network_config(
    network: Network | str, apex_package: Optional[str] = None
) -> NetworkConfig:
    """
    Получение конфигурации сети.

    Args:
        network: сеть (enum или строка 'mainnet' / 'testnet' / 'localnet')
        apex_package: адрес пакета протокола (если уже опубликован)

    Returns:
        NetworkConfig (новый экземпляр при указании apex_package)
    """
    config = NETWORKS[Network(network)]
    if apex_package is not None:
        config = config.with_apex_package(apex_package)
    return config


@dataclass(frozen=True)
class LedgerClientConfig:
    """
    Конфигурация клиента ledger.

    Attributes:
        sender: адрес отправителя транзакций (ключи и подпись — вне ядра)
        simulate_timeout_sec: таймаут dry run
        submit_timeout_sec: таймаут ожидания результата submit
        read_timeout_sec: таймаут чтения объектов
    """

    sender: str
    simulate_timeout_sec: float = 10.0
    submit_timeout_sec: float = 30.0
    read_timeout_sec: float = 10.0

    def __post_init__(self):
        for name in ("simulate_timeout_sec", "submit_timeout_sec", "read_timeout_sec"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class BuilderConfig:
    """
    Конфигурация CommandGraphBuilder.

    Attributes:
        strict_signatures: отклонять InvokeEntry для target без объявленной сигнатуры
        default_result_count: число результатов у target без сигнатуры
        consume_unknown_arguments: аргументы target без сигнатуры потребляются
            (False — считаются заимствованными, как при проверке декодером)
    """

    strict_signatures: bool = False
    default_result_count: int = 1
    consume_unknown_arguments: bool = True

    def __post_init__(self):
        if self.default_result_count < 0:
            raise ValueError(
                f"default_result_count must be non-negative, got {self.default_result_count}"
            )
