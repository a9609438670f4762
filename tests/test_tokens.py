from unittest.mock import MagicMock

import pytest
from hexbytes import HexBytes

from conftest import RELAYER_ADDRESS, TOKEN_ADDRESS, WALLET_ADDRESS
from errors import ChainReadError
from tokens import DEFAULT_LOOKBACK_BLOCKS, TRANSFER_TOPIC, TokenReader, address_topic


def _log(tx: int, block: int, sender: str, recipient: str, value: int, log_index: int = 0) -> dict:
    return {
        "transactionHash": HexBytes(bytes([tx]) * 32),
        "blockNumber": block,
        "logIndex": log_index,
        "_args": {"from": sender, "to": recipient, "value": value},
    }


def _reader():
    web3 = MagicMock()
    contract = MagicMock()
    web3.eth.contract.return_value = contract
    contract.events.Transfer.return_value.process_log.side_effect = lambda log: {"args": log["_args"]}
    return TokenReader(web3, TOKEN_ADDRESS), web3, contract


def test_address_topic_is_left_padded() -> None:
    topic = address_topic(WALLET_ADDRESS)

    assert len(topic) == 66
    assert topic.endswith(WALLET_ADDRESS[2:].lower())


def test_balance_and_token_info() -> None:
    reader, _, contract = _reader()
    contract.functions.balanceOf.return_value.call.return_value = 5
    contract.functions.name.return_value.call.return_value = "Coil"
    contract.functions.symbol.return_value.call.return_value = "COIL"
    contract.functions.decimals.return_value.call.return_value = 18
    contract.functions.totalSupply.return_value.call.return_value = 10**24

    assert reader.get_balance(WALLET_ADDRESS) == 5
    assert reader.get_token_info() == {"name": "Coil", "symbol": "COIL", "decimals": 18, "total_supply": 10**24}


def test_transfers_are_deduplicated_and_most_recent_first() -> None:
    reader, web3, _ = _reader()
    web3.eth.block_number = 5000
    self_transfer = _log(3, 4990, WALLET_ADDRESS, WALLET_ADDRESS, 1)
    sent = [_log(1, 4100, WALLET_ADDRESS, RELAYER_ADDRESS, 10), self_transfer]
    received = [_log(2, 4500, RELAYER_ADDRESS, WALLET_ADDRESS, 20), self_transfer]
    web3.eth.get_logs.side_effect = [sent, received]
    web3.eth.get_block.side_effect = lambda number: {"timestamp": 1_700_000_000 + number}

    transfers = reader.get_transfers(WALLET_ADDRESS)

    assert [t.block_number for t in transfers] == [4990, 4500, 4100]
    assert transfers[1].value == 20
    assert transfers[2].timestamp == 1_700_004_100
    first_filter = web3.eth.get_logs.call_args_list[0].args[0]
    assert first_filter["fromBlock"] == 5000 - DEFAULT_LOOKBACK_BLOCKS
    assert first_filter["topics"] == [TRANSFER_TOPIC, address_topic(WALLET_ADDRESS)]


def test_transfers_respect_limit() -> None:
    reader, web3, _ = _reader()
    web3.eth.get_logs.side_effect = [[_log(i, 100 + i, WALLET_ADDRESS, RELAYER_ADDRESS, i) for i in range(5)], []]
    web3.eth.get_block.return_value = {"timestamp": 1}

    transfers = reader.get_transfers(WALLET_ADDRESS, from_block=0, to_block=200, limit=2)

    assert [t.block_number for t in transfers] == [104, 103]


def test_timestamp_failure_keeps_transfers() -> None:
    reader, web3, _ = _reader()
    web3.eth.get_logs.side_effect = [[_log(1, 10, WALLET_ADDRESS, RELAYER_ADDRESS, 1)], []]
    web3.eth.get_block.side_effect = ValueError("block not found")

    transfers = reader.get_transfers(WALLET_ADDRESS, from_block=0, to_block=20)

    assert len(transfers) == 1
    assert transfers[0].timestamp is None


def test_log_query_failure_is_a_chain_read_error() -> None:
    reader, web3, _ = _reader()
    web3.eth.get_logs.side_effect = ValueError("query returned more than 10000 results")

    with pytest.raises(ChainReadError, match="_get_logs"):
        reader.get_transfers(WALLET_ADDRESS, from_block=0, to_block=20)


def test_transfers_sharing_a_transaction_are_kept_apart() -> None:
    reader, web3, _ = _reader()
    bundle = [
        _log(7, 300, RELAYER_ADDRESS, WALLET_ADDRESS, 1, log_index=3),
        _log(7, 300, RELAYER_ADDRESS, WALLET_ADDRESS, 2, log_index=9),
    ]
    web3.eth.get_logs.side_effect = [[], bundle]
    web3.eth.get_block.return_value = {"timestamp": 1}

    transfers = reader.get_transfers(WALLET_ADDRESS, from_block=0, to_block=400)

    assert [t.value for t in transfers] == [2, 1]
    assert transfers[0].transaction_hash == transfers[1].transaction_hash
