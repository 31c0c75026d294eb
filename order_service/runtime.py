"""
Order Service — 依存関係の組み立て

DB セッション・イベント発行・外部サービス・状態機械・Saga を1つにまとめ、
コマンドと復旧処理に渡す。
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from .clients import ExternalServices
from .orchestrator import RetryPolicy, SagaOrchestrator
from .publisher import EventPublisher
from .saga_log import SagaExecutionLog
from .saga_steps import OrderCreationSteps
from .state_machine import OrderStateMachine


@dataclass
class OrderRuntime:
    session_factory: sessionmaker
    publisher: EventPublisher
    services: ExternalServices
    state_machine: OrderStateMachine
    saga_log: SagaExecutionLog
    orchestrator: SagaOrchestrator


def build_runtime(
    session_factory: sessionmaker,
    publisher: EventPublisher,
    services: ExternalServices,
    retry: RetryPolicy | None = None,
    logger: logging.Logger | None = None,
) -> OrderRuntime:
    state_machine = OrderStateMachine(logger)
    saga_log = SagaExecutionLog(session_factory)
    steps = OrderCreationSteps(session_factory, services, state_machine)
    orchestrator = SagaOrchestrator(
        steps.build(),
        saga_log,
        publisher,
        retry=retry or RetryPolicy.from_config(),
        on_compensation_failure=steps.flag_for_reconciliation,
        logger=logger,
    )
    return OrderRuntime(
        session_factory=session_factory,
        publisher=publisher,
        services=services,
        state_machine=state_machine,
        saga_log=saga_log,
        orchestrator=orchestrator,
    )
