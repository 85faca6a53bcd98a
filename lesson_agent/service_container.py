from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .db import TurnRepository, connect
from .document import DocumentStore
from .executor import CommandExecutor
from .orchestrator import AgentOrchestrator
from .runtime_config import RuntimeConfigStore
from .session import SessionManager
from .transport import OllamaClient


@dataclass
class Services:
    settings: Settings
    runtime_config: RuntimeConfigStore
    client: OllamaClient
    documents: DocumentStore
    repository: TurnRepository
    sessions: SessionManager
    executor: CommandExecutor
    orchestrator: AgentOrchestrator


def build_services(settings: Settings) -> Services:
    runtime_config = RuntimeConfigStore(settings)
    client = OllamaClient(runtime_config)
    documents = DocumentStore()
    repository = TurnRepository(connect(settings.db_path))
    sessions = SessionManager(
        repository=repository,
        runtime_config_store=runtime_config,
        persisted_turn_limit=settings.persisted_turn_limit,
    )
    executor = CommandExecutor(client=client, runtime_config_store=runtime_config)
    orchestrator = AgentOrchestrator(
        client=client,
        executor=executor,
        sessions=sessions,
        runtime_config_store=runtime_config,
        history_context_turns=settings.history_context_turns,
        max_prompt_chars=settings.max_prompt_chars,
    )

    return Services(
        settings=settings,
        runtime_config=runtime_config,
        client=client,
        documents=documents,
        repository=repository,
        sessions=sessions,
        executor=executor,
        orchestrator=orchestrator,
    )
