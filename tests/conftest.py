"""
Pytest configuration and fixtures.

Shared fixtures for all tests: a fixed clock, a keeper config and an
in-memory chain client that behaves like the lottery contract.
"""

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Optional

import pytest

from keeper.clock import FixedClock
from keeper.config import KeeperConfig
from keeper.context import KeeperContext
from keeper.errors import ChainReadError
from keeper.models import PendingTransaction, Receipt, RoundEndedEvent, RoundSnapshot, WalletSnapshot
from keeper.scheduler import Scheduler

# Reference "end of round" timestamp
T = 1_700_000_000

WALLET = "0x1111111111111111111111111111111111111111"
CONTRACT = "0x2222222222222222222222222222222222222222"
TEST_PRIVATE_KEY = "0x" + "11" * 32


def make_snapshot(
    round_id: int = 7,
    end_time: int = T,
    ticket_count: int = 12,
    ended: bool = False,
    prize_pool: int = 1_200_000,
    start_time: Optional[int] = None,
) -> RoundSnapshot:
    return RoundSnapshot(
        round_id=round_id,
        start_time=start_time if start_time is not None else end_time - 3600,
        end_time=end_time,
        ticket_count=ticket_count,
        prize_pool=prize_pool,
        ended=ended,
    )


class FakeChainClient:
    """
    In-memory stand-in for LotteryChainClient.

    Confirming a close marks the current round ended, like endRound()
    does on the real contract. Set the *_error attributes to make calls
    fail, and submit_gate to hold submit_close_round() open.
    """

    address = WALLET

    def __init__(self, snapshot: RoundSnapshot, balance: int = 10**17):
        self.snapshot = snapshot
        self.balance = balance

        self.read_error: Optional[Exception] = None
        self.balance_error: Optional[Exception] = None
        self.submit_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self.receipt_error: Optional[Exception] = None

        # When True, closes succeed but reads keep returning ended=False
        self.lagging = False

        self.submit_gate: Optional[threading.Event] = None
        self.submit_entered = threading.Event()
        self.submit_calls = 0
        self.confirm_calls = 0

        # Pending-nonce counter, every broadcast, and receipts mined late
        self.next_nonce = 0
        self.submitted: list[PendingTransaction] = []
        self.receipts: dict[str, Receipt] = {}

    def read_round_snapshot(self) -> RoundSnapshot:
        if self.read_error:
            raise self.read_error
        return self.snapshot

    def read_round(self, round_id: int) -> RoundSnapshot:
        if self.read_error:
            raise self.read_error
        if round_id != self.snapshot.round_id:
            raise ChainReadError(f"unknown round {round_id}")
        return self.snapshot

    def read_current_round_id(self) -> int:
        return self.read_round_snapshot().round_id

    def read_wallet_balance(self) -> int:
        if self.balance_error:
            raise self.balance_error
        return self.balance

    def read_wallet(self) -> WalletSnapshot:
        return WalletSnapshot(
            address=self.address,
            native_balance=self.read_wallet_balance(),
            observed_at=datetime.now(timezone.utc),
        )

    def submit_close_round(self, replacing: Optional[PendingTransaction] = None) -> PendingTransaction:
        self.submit_calls += 1
        self.submit_entered.set()
        if self.submit_gate is not None:
            self.submit_gate.wait(5)
        if self.submit_error:
            raise self.submit_error
        if replacing is not None:
            nonce = replacing.nonce
        else:
            nonce = self.next_nonce
            self.next_nonce += 1
        pending = PendingTransaction(
            tx_hash=f"0x{self.submit_calls:064x}",
            nonce=nonce,
            submitted_at=datetime.now(timezone.utc),
        )
        self.submitted.append(pending)
        return pending

    def get_receipt(self, pending) -> Optional[Receipt]:
        if self.receipt_error:
            raise self.receipt_error
        return self.receipts.get(pending.tx_hash)

    def await_confirmation(self, pending, timeout=None, stop_event=None) -> Receipt:
        self.confirm_calls += 1
        if self.confirm_error:
            raise self.confirm_error
        round_id = self.snapshot.round_id
        if not self.lagging:
            self.snapshot = dataclasses.replace(self.snapshot, ended=True)
        self.balance -= 52_000 * 10**9
        return Receipt(
            tx_hash=pending.tx_hash,
            gas_used=52_000,
            success=True,
            block_number=100,
            round_ended=RoundEndedEvent(round_id=round_id, winner=WALLET, prize=self.snapshot.prize_pool),
        )


@pytest.fixture
def clock():
    """Clock one second past the reference round end."""
    return FixedClock(T + 1)


@pytest.fixture
def config():
    return KeeperConfig(
        rpc_url="http://localhost:8545",
        private_key=TEST_PRIVATE_KEY,
        contract_address=CONTRACT,
        confirmation_timeout_seconds=0.2,
        confirmation_poll_seconds=0.01,
    )


@pytest.fixture
def chain():
    """Fake chain holding round 7: expired at T with 12 tickets."""
    return FakeChainClient(make_snapshot())


@pytest.fixture
def context(config, chain, clock):
    return KeeperContext(config=config, chain=chain, clock=clock)


@pytest.fixture
def scheduler(context):
    return Scheduler(context)
