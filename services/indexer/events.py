from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
ZERO_ROLE_HASH = '0x' + '00' * 32

ADMIN_EVENTS = {'OwnershipTransferred', 'RoleGranted', 'RoleRevoked', 'RoleAdminChanged'}
ROLE_NAMES = ('MANUFACTURER_ROLE', 'DISTRIBUTOR_ROLE', 'PHARMACY_ROLE', 'REGULATOR_ROLE')


class DecodeError(ValueError):
    pass


def _hex_prefixed(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return f'0x{bytes(value).hex()}'
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.startswith(('0x', '0X')):
        return int(text, 16)
    return int(text)


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = _hex_prefixed(value)[2:]
    return bytes.fromhex(text)


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: tuple[str, ...]
    data: str
    transaction_hash: str
    block_number: int
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, log: Mapping[str, Any]) -> RawLog:
        # get_logs yields ints/HexBytes, eth_subscribe notifications yield hex strings
        try:
            return cls(
                address=str(log.get('address', '')),
                topics=tuple(_hex_prefixed(topic).lower() for topic in log.get('topics') or []),
                data=_hex_prefixed(log.get('data') or '0x'),
                transaction_hash=_hex_prefixed(log['transactionHash']),
                block_number=_to_int(log['blockNumber']),
                log_index=_to_int(log['logIndex']),
                removed=bool(log.get('removed', False))
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f'malformed log payload: {exc}') from exc


@dataclass(frozen=True)
class DecodedLog:
    name: str
    args: dict[str, Any]


def _canonical_type(abi_input: Mapping[str, Any]) -> str:
    type_ = str(abi_input['type'])
    if type_.startswith('tuple'):
        inner = ','.join(_canonical_type(component) for component in abi_input.get('components', []))
        return f'({inner}){type_[len("tuple"):]}'
    return type_


def _is_dynamic(type_: str) -> bool:
    return type_ in {'string', 'bytes'} or type_.endswith(']') or type_.startswith('(')


@dataclass(frozen=True)
class EventSchema:
    name: str
    inputs: tuple[Mapping[str, Any], ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(_canonical_type(item) for item in self.inputs)})"

    @property
    def topic(self) -> str:
        return _hex_prefixed(Web3.keccak(text=self.signature)).lower()


def _normalize_value(type_: str, value: Any) -> Any:
    if type_ == 'address':
        return Web3.to_checksum_address(value)
    if isinstance(value, (bytes, bytearray)):
        return _hex_prefixed(value)
    return value


class EventDecoder:
    """Decodes raw contract logs against the event entries of an ABI, keyed by topic0."""

    def __init__(self, abi: list[dict[str, Any]]) -> None:
        self._schemas: dict[str, EventSchema] = {}
        for entry in abi:
            if entry.get('type') != 'event' or entry.get('anonymous'):
                continue
            schema = EventSchema(name=str(entry['name']), inputs=tuple(entry.get('inputs', [])))
            self._schemas[schema.topic] = schema

    @property
    def topics(self) -> list[str]:
        return sorted(self._schemas)

    def schema_for(self, name: str) -> EventSchema:
        for schema in self._schemas.values():
            if schema.name == name:
                return schema
        raise KeyError(name)

    def decode(self, log: RawLog) -> DecodedLog:
        if not log.topics:
            raise DecodeError(f'log without topics tx_hash={log.transaction_hash} log_index={log.log_index}')

        schema = self._schemas.get(log.topics[0])
        if schema is None:
            raise DecodeError(f'unknown event topic={log.topics[0]} tx_hash={log.transaction_hash}')

        indexed = [item for item in schema.inputs if item.get('indexed')]
        plain = [item for item in schema.inputs if not item.get('indexed')]
        if len(indexed) != len(log.topics) - 1:
            raise DecodeError(
                f'{schema.name} expects {len(indexed)} indexed topics, got {len(log.topics) - 1}'
            )

        args: dict[str, Any] = {}
        try:
            for item, topic in zip(indexed, log.topics[1:]):
                type_ = _canonical_type(item)
                if _is_dynamic(type_):
                    # only the keccak of a dynamic indexed value is on chain
                    args[item['name']] = topic
                    continue
                (value,) = decode([type_], _to_bytes(topic))
                args[item['name']] = _normalize_value(type_, value)

            values = decode([_canonical_type(item) for item in plain], _to_bytes(log.data))
            for item, value in zip(plain, values):
                args[item['name']] = _normalize_value(_canonical_type(item), value)
        except (DecodingError, TypeError, ValueError, OverflowError) as exc:
            raise DecodeError(f'cannot decode {schema.name}: {exc}') from exc

        return DecodedLog(name=schema.name, args=args)


@dataclass(frozen=True)
class DrugManufactured:
    drug_id: str
    product_id: str
    batch_id: str
    manufacturer: str
    timestamp: int

    name = 'DrugManufactured'


@dataclass(frozen=True)
class DrugTransferred:
    drug_id: str
    sender: str
    recipient: str
    new_status: str
    timestamp: int

    name = 'DrugTransferred'


@dataclass(frozen=True)
class ColdChainViolation:
    drug_id: str
    details: str
    timestamp: int | None = None

    name = 'ColdChainViolation'


@dataclass(frozen=True)
class ContractAdminEvent:
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownEvent:
    name: str
    args: dict[str, Any] = field(default_factory=dict)


EventPayload = Union[DrugManufactured, DrugTransferred, ColdChainViolation, ContractAdminEvent, UnknownEvent]


def build_payload(name: str, args: Mapping[str, Any]) -> EventPayload:
    try:
        if name == 'DrugManufactured':
            return DrugManufactured(
                drug_id=str(args['id']),
                product_id=str(args['productId']),
                batch_id=str(args['batchId']),
                manufacturer=str(args['manufacturer']),
                timestamp=int(args['timestamp'])
            )

        if name == 'DrugTransferred':
            return DrugTransferred(
                drug_id=str(args['id']),
                sender=str(args['from']),
                recipient=str(args['to']),
                new_status=str(args['newStatus']),
                timestamp=int(args['timestamp'])
            )

        if name == 'ColdChainViolation':
            timestamp = args.get('timestamp')
            return ColdChainViolation(
                drug_id=str(args['id']),
                details=str(args['details']),
                timestamp=int(timestamp) if timestamp is not None else None
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise DecodeError(f'malformed {name} arguments: {exc!r}') from exc

    if name in ADMIN_EVENTS:
        return ContractAdminEvent(name=name, args=dict(args))
    return UnknownEvent(name=name, args=dict(args))


@dataclass(frozen=True)
class ChainEvent:
    payload: EventPayload
    transaction_hash: str
    block_number: int
    log_index: int
    block_timestamp: int | None = None

    @property
    def name(self) -> str:
        return self.payload.name

    @property
    def sort_key(self) -> tuple[int, int]:
        return self.block_number, self.log_index

    def describe(self) -> str:
        drug_id = getattr(self.payload, 'drug_id', None)
        return (
            f'event={self.name} drug_id={drug_id} tx_hash={self.transaction_hash} '
            f'block={self.block_number} log_index={self.log_index}'
        )


def canonical_event(decoded: DecodedLog, log: RawLog, block_timestamp: int | None) -> ChainEvent:
    """Single construction step shared by the backfill and live paths."""
    return ChainEvent(
        payload=build_payload(decoded.name, decoded.args),
        transaction_hash=log.transaction_hash.lower(),
        block_number=log.block_number,
        log_index=log.log_index,
        block_timestamp=block_timestamp
    )


def role_names(admin_role_hash: str = ZERO_ROLE_HASH) -> dict[str, str]:
    table = {_hex_prefixed(Web3.keccak(text=name)).lower(): name for name in ROLE_NAMES}
    table[_hex_prefixed(admin_role_hash).lower()] = 'DEFAULT_ADMIN_ROLE'
    return table
