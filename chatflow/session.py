"""
Chat session - configuration and composition root.

ChatSession builds every collaborator once and wires them by
constructor injection; nothing here is a global.

Usage:
    configure_logging("DEBUG")
    config = SessionConfig(stories_path="stories", save_path="saves")
    session = ChatSession(config, MyPresenter())
    session.start()
    session.engine.advance("emma")
    ...
    session.shutdown()
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from chatcore.core.events import EventBus
from chatcore.resources.catalog import StoryCatalog
from chatflow.dialog.compiler import Compiler
from chatflow.dialog.flow import FlowEngine
from chatflow.dialog.presenter import Presenter
from chatflow.save.manager import ConversationStore
from chatflow.save.profile import UnlockProfile

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Set up root logging for scripts and demos."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


class SessionConfig(BaseModel):
    """Configuration for a chat session."""

    model_config = ConfigDict(extra='forbid')

    stories_path: Path = Path("stories")
    save_path: Path = Path("saves")
    save_file: str = "conversations.json"
    profile_file: str = "profile.json"
    min_save_interval: float = Field(default=2.0, ge=0)
    reset_cooldown: float = Field(default=2.0, ge=0)
    allow_routing_nodes: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_file(cls, path: Path | str) -> SessionConfig:
        """Load a config from JSON; relative paths resolve against its directory."""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        config = cls.model_validate(data)
        base = path.parent
        if not config.stories_path.is_absolute():
            config.stories_path = base / config.stories_path
        if not config.save_path.is_absolute():
            config.save_path = base / config.save_path
        return config


class ChatSession:
    """
    Owns the event bus, catalog, profile, store and engine of one player.

    Durable saves happen on start (profile), on suspend and on shutdown;
    everything in between is throttled by the store.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        presenter: Optional[Presenter] = None,
        event_bus: Optional[EventBus] = None,
    ):
        if presenter is None:
            raise ValueError("ChatSession needs a presenter")

        self.config = config or SessionConfig()
        self.event_bus = event_bus or EventBus()
        self.catalog = StoryCatalog(self.config.stories_path)
        self.profile = UnlockProfile(self.config.save_path / self.config.profile_file)
        self.store = ConversationStore(
            self.config.save_path,
            save_file=self.config.save_file,
            min_save_interval=self.config.min_save_interval,
            event_bus=self.event_bus,
            profile=self.profile,
        )
        self.compiler = Compiler(allow_routing_nodes=self.config.allow_routing_nodes)
        self.engine = FlowEngine(
            self.catalog,
            self.store,
            presenter,
            compiler=self.compiler,
            event_bus=self.event_bus,
            profile=self.profile,
            reset_cooldown=self.config.reset_cooldown,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> int:
        """
        Load stories, the profile and saved conversations.

        Returns:
            Number of stories available
        """
        count = self.catalog.load_all()
        self.profile.load()
        self.store.load()
        self._started = True
        logger.info(f"Session started: {count} stories, {len(self.store.conversation_ids)} saved conversations")
        return count

    def suspend(self) -> None:
        """Make everything durable (application going to background)."""
        self.engine.close()
        self.store.flush()
        self.profile.save()

    def shutdown(self) -> None:
        self.suspend()
        self.event_bus.clear()
        self._started = False
        logger.info("Session shut down")
