"""Registry-backed store of the bots a scan node should run."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from .refstore import InvalidRefError, parse_cid

logger = logging.getLogger(__name__)

KEY_DEFAULT_CHAIN_SETTING = "default"
MIN_SHARD_COUNT = 1

_MANIFEST_ATTEMPTS = 10
_REFRESH_AFTER_SECONDS = 3600.0

ValidateImage = Callable[[str], str]


class InvalidBotError(ValueError):
    """A bot cannot be run because its reference or manifest is invalid."""


@dataclass(frozen=True)
class ShardConfig:
    """Where a scanner sits among the scanners sharing a bot."""

    shard_id: int
    shards: int
    target: int


_UNSHARDED = ShardConfig(shard_id=0, shards=0, target=0)


@dataclass
class AgentConfig:
    """A bot the node should run."""

    id: str
    image: str
    manifest: str = ""
    is_local: bool = False
    shard_config: Optional[ShardConfig] = None


@dataclass(frozen=True)
class RegistryAgent:
    """A bot as recorded in the registry: its id and manifest reference."""

    agent_id: str
    manifest: str


class _RegistryClient(Protocol):
    def get_assignment_hash(self, scanner: str) -> str: ...

    def is_enabled_scanner(self, scanner: str) -> bool: ...

    def peg_latest_block(self) -> None: ...

    def reset_opts(self) -> None: ...

    def assigned_agents(self, scanner: str) -> Iterable[RegistryAgent]: ...

    def get_agent(self, agent_id: str) -> RegistryAgent: ...

    def num_scanners_for_by_chain(self, agent_id: str, chain_id: int) -> int: ...

    def index_of_assigned_scanner_by_chain(
        self, agent_id: str, scanner: str, chain_id: int
    ) -> Optional[int]: ...


class _ManifestClient(Protocol):
    def get_agent_manifest(self, ref: str) -> Mapping[str, Any]: ...


def _manifest_body(data: Mapping[str, Any]) -> Mapping[str, Any]:
    inner = data.get("manifest") if isinstance(data, Mapping) else None
    return inner if isinstance(inner, Mapping) else data


def _chain_settings(data: Mapping[str, Any]) -> Mapping[str, Any]:
    return _manifest_body(data).get("chainSettings") or {}


def calculate_shard_id(target: int, idx: int) -> int:
    """Shard id of the scanner at ``idx`` when each shard has ``target`` scanners.

    With target 6 and 3 shards, indexes map to [0]*6 + [1]*6 + [2]*6.
    """
    if target == 0:
        return 0
    return idx // target


def load_bot(
    manifest_client: _ManifestClient,
    agent_id: str,
    ref: str,
    validate_image: Optional[ValidateImage] = None,
) -> AgentConfig:
    """Fetch and check a bot's manifest and build its config.

    Raises InvalidBotError for bad references or images and RuntimeError
    when the manifest cannot be fetched.
    """
    if not ref:
        raise InvalidBotError(f"invalid bot cid '{ref}'")
    try:
        parse_cid(ref)
    except InvalidRefError as exc:
        raise InvalidBotError(f"invalid bot cid '{ref}'") from exc

    last_error: Exception | None = None
    data = None
    for _ in range(_MANIFEST_ATTEMPTS):
        try:
            data = manifest_client.get_agent_manifest(ref)
        except Exception as exc:
            last_error = exc
            continue
        break
    else:
        raise RuntimeError(f"failed to load the bot manifest: {last_error}") from last_error

    image_ref = _manifest_body(data).get("imageReference")
    if image_ref is None:
        raise InvalidBotError("invalid bot image reference, it is nil")

    if validate_image is None:
        image = image_ref
    else:
        try:
            image = validate_image(image_ref)
        except Exception as exc:
            raise InvalidBotError(
                f"invalid bot image reference '{image_ref}': {exc}"
            ) from exc

    return AgentConfig(id=agent_id, image=image, manifest=ref)


class RegistryStore:
    """Tracks the bots assigned to a scanner in the on-chain registry."""

    def __init__(
        self,
        registry_client: _RegistryClient,
        manifest_client: _ManifestClient,
        chain_id: int,
        validate_image: Optional[ValidateImage] = None,
    ) -> None:
        self._rc = registry_client
        self._mc = manifest_client
        self.chain_id = chain_id
        self._validate_image = validate_image
        self._last_update: float | None = None
        self._last_completed_version = ""
        self._loaded_bots: list[AgentConfig] = []
        self._invalid_bots: list[RegistryAgent] = []
        self._lock = threading.Lock()

    def _loaded_bot(self, bot: RegistryAgent) -> Optional[AgentConfig]:
        return next(
            (loaded for loaded in self._loaded_bots if loaded.manifest == bot.manifest),
            None,
        )

    def _is_invalid_bot(self, bot: RegistryAgent) -> bool:
        return any(invalid.manifest == bot.manifest for invalid in self._invalid_bots)

    def get_agents_if_changed(
        self, scanner: str
    ) -> tuple[Optional[list[AgentConfig]], bool]:
        """Return (bots, True) if the assignment changed, else (None, False)."""
        with self._lock:
            assignment_hash = self._rc.get_assignment_hash(scanner)
            try:
                enabled = self._rc.is_enabled_scanner(scanner)
            except Exception as exc:
                raise RuntimeError(
                    f"failed to check if scanner is enabled: {exc}"
                ) from exc
            if not enabled:
                return [], True

            should_update = (
                self._last_completed_version != assignment_hash
                or self._last_update is None
                or time.monotonic() - self._last_update > _REFRESH_AFTER_SECONDS
            )
            if not should_update:
                return None, False

            self._rc.peg_latest_block()
            loaded_bots: list[AgentConfig] = []
            invalid_bots: list[RegistryAgent] = []
            failed_loading_any = False
            try:
                for bot in self._rc.assigned_agents(scanner):
                    if self._is_invalid_bot(bot):
                        invalid_bots.append(bot)
                        logger.warning("invalid bot %s - skipping", bot.agent_id)
                        continue
                    loaded = self._loaded_bot(bot)
                    if loaded is not None:
                        loaded_bots.append(loaded)
                        logger.info("already loaded bot %s - skipping", bot.agent_id)
                        continue

                    try:
                        bot_cfg = load_bot(
                            self._mc, bot.agent_id, bot.manifest, self._validate_image
                        )
                    except InvalidBotError as exc:
                        invalid_bots.append(bot)
                        logger.warning("invalid bot %s - skipping: %s", bot.agent_id, exc)
                        continue
                    except Exception as exc:
                        # Not remembered, so it is retried next time.
                        failed_loading_any = True
                        logger.warning(
                            "could not load bot %s - skipping: %s", bot.agent_id, exc
                        )
                        continue

                    try:
                        shard_id, shards, target = self.find_scanner_shard_id_for_bot(
                            bot_cfg.id, scanner
                        )
                    except Exception as exc:
                        logger.warning(
                            "could not find shard information for bot %s: %s",
                            bot.agent_id,
                            exc,
                        )
                        continue
                    bot_cfg.shard_config = ShardConfig(
                        shard_id=shard_id, shards=shards, target=target
                    )
                    loaded_bots.append(bot_cfg)
                    logger.info("successfully loaded bot %s", bot.agent_id)
            finally:
                self._rc.reset_opts()

            # Forgetting a fully failed attempt avoids sticking to a hash with zero bots.
            if not loaded_bots and failed_loading_any:
                raise RuntimeError("loaded zero bots")

            self._loaded_bots = loaded_bots
            self._invalid_bots = invalid_bots
            self._last_update = time.monotonic()

            if failed_loading_any:
                logger.warning(
                    "failed loading some of the bots - keeping the previous list version"
                )
            else:
                self._last_completed_version = assignment_hash

            return list(loaded_bots), True

    def find_agent_globally(self, agent_id: str) -> AgentConfig:
        """Load a bot by id regardless of assignment."""
        try:
            agent = self._rc.get_agent(agent_id)
        except Exception as exc:
            raise RuntimeError(
                f"failed to get the latest ref: {exc}, agentID: {agent_id}"
            ) from exc
        return load_bot(self._mc, agent_id, agent.manifest, self._validate_image)

    def find_scanner_shard_id_for_bot(
        self, agent_id: str, scanner_address: str
    ) -> tuple[int, int, int]:
        """Return (shard id, shard count, target) of the scanner for the bot."""
        agent = self.find_agent_globally(agent_id)
        data = self._mc.get_agent_manifest(agent.manifest)

        try:
            assigns = int(self._rc.num_scanners_for_by_chain(agent_id, self.chain_id))
        except Exception as exc:
            raise RuntimeError(f"failed to get assign count: {exc}") from exc

        settings = _chain_settings(data)
        shards = 0
        target = 0
        for key in (KEY_DEFAULT_CHAIN_SETTING, str(self.chain_id)):
            setting = settings.get(key)
            if setting is not None:
                target = int(setting.get("target") or 0)
                shards = int(setting.get("shards") or 0)

        if shards == 0:
            return 0, MIN_SHARD_COUNT, assigns

        if target == 0:
            target = assigns // shards

        try:
            idx = self._rc.index_of_assigned_scanner_by_chain(
                agent_id, scanner_address, self.chain_id
            )
        except Exception as exc:
            raise RuntimeError(
                f"failed to get the index of scanner: {exc}, agentID: {agent_id}"
            ) from exc
        if idx is None:
            raise LookupError(f"index for {agent_id} and {scanner_address} not found")

        return calculate_shard_id(target, int(idx)), shards, target


class PrivateRegistryStore:
    """Serves a fixed list of bots from local configuration."""

    def __init__(
        self,
        registry_client: _RegistryClient,
        manifest_client: _ManifestClient,
        bot_images: Sequence[str] = (),
        bot_ids: Sequence[str] = (),
        validate_image: Optional[ValidateImage] = None,
    ) -> None:
        self._rc = registry_client
        self._mc = manifest_client
        self.bot_images = list(bot_images)
        self.bot_ids = list(bot_ids)
        self._validate_image = validate_image
        self._lock = threading.Lock()

    def get_agents_if_changed(self, scanner: str) -> tuple[list[AgentConfig], bool]:
        """Return the configured bots; the list always counts as changed."""
        with self._lock:
            configs = [
                AgentConfig(id=str(number), image=image, is_local=True)
                for number, image in enumerate(self.bot_images, start=1)
                if image
            ]
            for agent_id in self.bot_ids:
                try:
                    agent = self._rc.get_agent(agent_id)
                except Exception as exc:
                    logger.error("failed to get bot %s from registry: %s", agent_id, exc)
                    continue
                try:
                    configs.append(
                        load_bot(self._mc, agent_id, agent.manifest, self._validate_image)
                    )
                except Exception as exc:
                    logger.error("failed to load bot %s: %s", agent_id, exc)
            return configs, True

    def find_agent_globally(self, agent_id: str) -> AgentConfig:
        """Always fails: there is no global lookup in private mode."""
        message = "feature not available (private/local registry)"
        logger.debug("%s: requested bot %s", message, agent_id)
        raise RuntimeError(f"{message}: {agent_id}")

    def find_scanner_shard_id_for_bot(
        self, agent_id: str, scanner_address: str
    ) -> tuple[int, int, int]:
        """Private bots are not sharded: shard id, shard count and target are zero."""
        logger.debug(
            "bot %s is not sharded for scanner %s in private mode",
            agent_id,
            scanner_address,
        )
        shard_id, shards, target = dataclasses.astuple(_UNSHARDED)
        return shard_id, shards, target