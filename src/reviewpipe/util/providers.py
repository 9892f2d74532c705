"""Provider adapters for AI coding-agent CLIs.

Each adapter knows how to build the command line for one vendor's CLI
(analysis runs and tool-free JSON extraction runs), probe whether the CLI is
installed, and execute a run while streaming normalized progress events.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from typing import Any

from ..schemas.provider import ExtractionConfig, Invocation, ModelDefinition, ProviderConfig
from .json_extractor import ParseResult, extract_json
from .protocols import ProtocolAdapter, get_protocol
from .stream_parser import EventSink, LineSplitter, StreamParser
from .utils import kill_process_tree, run_process, spawn_process

logger = logging.getLogger(__name__)
stream_logger = logging.getLogger("reviewpipe.stream")


def _get_env_float(name: str, default: float) -> float:
    """Get a float from environment variable, with fallback to default."""
    val = os.environ.get(name)
    if val:
        try:
            return float(val)
        except ValueError:
            pass
    return default


# How long `<cli> --version` may take before the CLI is reported unavailable
PROBE_TIMEOUT = _get_env_float("REVIEWPIPE_PROBE_TIMEOUT", 10.0)
# Upper bound for the tool-free LLM call that recovers JSON from bad output
EXTRACTION_TIMEOUT = _get_env_float("REVIEWPIPE_EXTRACTION_TIMEOUT", 60.0)
DEFAULT_EXECUTION_TIMEOUT = 300.0

# Read-only tools granted to Claude Code outside yolo mode
CLAUDE_ALLOWED_TOOLS = (
    "Read",
    "Bash(git diff*)",
    "Bash(git log*)",
    "Bash(git show*)",
    "Bash(git status*)",
    "Bash(git branch*)",
    "Bash(git rev-parse*)",
    "Bash(cat *)",
    "Bash(ls *)",
    "Bash(head *)",
    "Bash(tail *)",
    "Bash(grep *)",
    "Bash(find *)",
)
PI_TOOLS = "read,bash,grep,find,ls"

EXTRACTION_PROMPT = (
    "Extract the JSON object from the following text. Return ONLY the valid JSON, "
    "with no markdown code fences, no explanation and no other text.\n\n"
    "Text to extract JSON from:\n"
)

_SHELL_META_RE = re.compile(r"""[\s()\[\]{},'"`$&|;<>*?!#~\\]""")


def quote_shell_arg(arg: str) -> str:
    """Single-quote an argument if the shell would otherwise interpret it.

    Embedded single quotes are written as ``'\\''``.
    """
    if arg and not _SHELL_META_RE.search(arg):
        return arg
    return "'" + arg.replace("'", "'\\''") + "'"


def build_shell_command(command: str, args: list[str]) -> str:
    """Join a (possibly multi-word) command and its quoted args into one shell string."""
    return " ".join([command, *(quote_shell_arg(arg) for arg in args)])


def command_needs_shell(command: str) -> bool:
    """Multi-word commands such as ``npx foo`` must be run through the shell."""
    return any(ch.isspace() for ch in command)


def resolve_default_model(models: list[ModelDefinition]) -> ModelDefinition | None:
    """Pick the default model: explicit default, then first balanced, then first."""
    for model in models:
        if model.default:
            return model
    for model in models:
        if model.tier == "balanced":
            return model
    return models[0] if models else None


class AIProvider(ABC):
    """Base class for CLI-backed review providers.

    Subclasses describe the vendor (ids, default binary, built-in models) and
    the fixed flags of its CLI; merging of config overrides, command
    resolution, probing and execution live here.
    """

    provider_id: str = ""
    display_name: str = ""
    default_command: str = ""
    command_env_var: str = ""
    install_instructions: str = ""
    builtin_models: tuple[ModelDefinition, ...] = ()

    def __init__(self, model: str | None = None, config: ProviderConfig | None = None):
        self.config = config or ProviderConfig()
        if self.config.install_instructions:
            self.install_instructions = self.config.install_instructions
        self.protocol: ProtocolAdapter = get_protocol(self.provider_id)
        default = resolve_default_model(self.get_models())
        self.model = model or (default.id if default else "default")
        self.command = self.resolve_command()
        self.use_shell = command_needs_shell(self.command)

    # --- models ---------------------------------------------------------

    def get_models(self) -> list[ModelDefinition]:
        """Configured models when present, otherwise the built-in catalogue."""
        if self.config.models:
            return list(self.config.models)
        return list(self.builtin_models)

    def _builtin_model(self, model_id: str) -> ModelDefinition | None:
        for model in self.builtin_models:
            if model.id == model_id:
                return model
        return None

    def resolve_cli_model(self, model_id: str) -> str | None:
        """Model string for the CLI; None means no model flags at all.

        An explicit ``cli_model`` on the configured entry wins, then one on the
        built-in entry with the same id, then the id itself.
        """
        for definition in (self.config.find_model(model_id), self._builtin_model(model_id)):
            if definition is not None and definition.has_cli_model:
                return definition.cli_model
        return model_id

    def get_fast_tier_model(self) -> str:
        """First fast-tier model, falling back to the analysis model."""
        for model in self.get_models():
            if model.tier == "fast":
                return model.id
        return self.model

    # --- command line ---------------------------------------------------

    @property
    def yolo(self) -> bool:
        return self.config.yolo

    def resolve_command(self) -> str:
        """Env override, then configured command, then the vendor default."""
        env_command = os.environ.get(self.command_env_var, "").strip() if self.command_env_var else ""
        if env_command:
            return env_command
        if self.config.command and self.config.command.strip():
            return self.config.command.strip()
        return self.default_command

    @abstractmethod
    def base_args(self, model_id: str) -> list[str]:
        """Fixed flags for an analysis run, including model and tool flags."""

    @abstractmethod
    def extraction_base_args(self, model_id: str) -> list[str]:
        """Fixed flags for a tool-free extraction run."""

    def fixed_env(self) -> dict[str, str]:
        """Adapter variables that take precedence over configured env."""
        return {}

    def _override_args(self, model_id: str) -> list[str]:
        builtin = self._builtin_model(model_id)
        configured = self.config.find_model(model_id)
        return [
            *(builtin.extra_args if builtin else []),
            *self.config.extra_args,
            *(configured.extra_args if configured else []),
        ]

    def build_args(self, model_id: str | None = None) -> list[str]:
        """Base flags, built-in model extra_args, provider extra_args, configured model extra_args."""
        model_id = model_id or self.model
        return [*self.base_args(model_id), *self._override_args(model_id)]

    def build_extraction_args(self, model_id: str) -> list[str]:
        return [*self.extraction_base_args(model_id), *self._override_args(model_id)]

    def build_env(self, model_id: str | None = None) -> dict[str, str]:
        """Provider env, then built-in and configured model env, then fixed adapter variables."""
        model_id = model_id or self.model
        builtin = self._builtin_model(model_id)
        configured = self.config.find_model(model_id)
        return {
            **self.config.env,
            **(builtin.env if builtin else {}),
            **(configured.env if configured else {}),
            **self.fixed_env(),
        }

    def _command_line(self, args: list[str]) -> tuple[str, list[str]]:
        if self.use_shell:
            return build_shell_command(self.command, args), []
        return self.command, list(args)

    def get_invocation(self, model_id: str | None = None) -> Invocation:
        model_id = model_id or self.model
        command, args = self._command_line(self.build_args(model_id))
        return Invocation(command=command, args=args, use_shell=self.use_shell, env=self.build_env(model_id))

    def get_extraction_config(self) -> ExtractionConfig:
        """Command line for a tool-free JSON extraction call on the fast tier."""
        model_id = self.get_fast_tier_model()
        command, args = self._command_line(self.build_extraction_args(model_id))
        return ExtractionConfig(
            command=command,
            args=args,
            use_shell=self.use_shell,
            prompt_via_stdin=True,
            env=self.build_env(model_id),
        )

    # --- availability ---------------------------------------------------

    def test_availability(self, timeout: float | None = None) -> bool:
        """Run ``<command> --version``. Never raises.

        Returns:
            True only when the CLI exited 0 within the timeout
        """
        timeout = PROBE_TIMEOUT if timeout is None else timeout
        if self.use_shell:
            cmd: str | list[str] = build_shell_command(self.command, ["--version"])
        else:
            cmd = [self.command, "--version"]
        try:
            process = spawn_process(cmd, use_shell=self.use_shell, env=self.build_env())
        except OSError as e:
            logger.warning("%s CLI not available: %s", self.display_name, e)
            return False

        try:
            process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("%s CLI did not answer --version within %.0fs", self.display_name, timeout)
            kill_process_tree(process)
            process.communicate()
            return False

        if process.returncode != 0:
            logger.warning("%s CLI --version exited with code %s", self.display_name, process.returncode)
            return False
        return True

    # --- execution ------------------------------------------------------

    def execute(
        self,
        prompt: str,
        cwd: str | None = None,
        timeout: float = DEFAULT_EXECUTION_TIMEOUT,
        level: str = "unknown",
        on_stream_event: EventSink | None = None,
    ) -> ParseResult:
        """Run the CLI on a prompt and extract its final JSON answer.

        Progress events are delivered to ``on_stream_event`` from the stdout
        reader thread while the CLI runs. Failures to start, non-zero exits
        and timeouts are reported as failed ParseResults.

        Args:
            prompt: Prompt text, written to the CLI's stdin
            cwd: Working directory for the run; also used to shorten paths in events
            timeout: Seconds before the process tree is killed
            level: Label used in log messages
            on_stream_event: Optional sink for live StreamEvents

        Returns:
            ParseResult with the extracted JSON or an error
        """
        invocation = self.get_invocation()
        logger.info("[%s] Running %s (model %s)", level, self.display_name, self.model)

        feeders: list[Any] = []
        if on_stream_event is not None:
            feeders.append(StreamParser(self.protocol.new_live_normalizer(), on_stream_event, cwd=cwd))
        if stream_logger.isEnabledFor(logging.DEBUG):
            feeders.append(LineSplitter(lambda line: stream_logger.debug("[%s] %s", self.provider_id, line)))

        def on_stdout(chunk: bytes) -> None:
            for feeder in feeders:
                feeder.feed(chunk)

        try:
            outcome = run_process(
                invocation.popen_args(),
                use_shell=invocation.use_shell,
                cwd=cwd,
                env=invocation.env,
                input_text=prompt,
                timeout=timeout,
                on_stdout=on_stdout if feeders else None,
            )
        except OSError as e:
            logger.warning("[%s] %s CLI could not be started: %s", level, self.display_name, e)
            return ParseResult.failure(
                f"{self.display_name} CLI could not be started ({e}). {self.install_instructions}".strip()
            )
        finally:
            for feeder in feeders:
                feeder.flush()

        if outcome.timed_out:
            return ParseResult.failure(f"{self.display_name} timed out after {timeout:.0f}s")
        if outcome.returncode != 0:
            stderr = outcome.stderr.strip()[-500:]
            return ParseResult.failure(f"{self.display_name} exited with code {outcome.returncode}: {stderr}")

        result = self.protocol.extract(outcome.stdout)
        if result.success:
            return result

        logger.warning("[%s] %s output had no JSON (%s); trying LLM extraction", level, self.display_name, result.error)
        recovered = self.extract_json_with_llm(outcome.stdout, level=level)
        return recovered if recovered.success else result

    def extract_json_with_llm(self, text: str, level: str = "extraction", timeout: float | None = None) -> ParseResult:
        """Ask the fast-tier model, with no tools, to return only the JSON in ``text``."""
        config = self.get_extraction_config()
        timeout = EXTRACTION_TIMEOUT if timeout is None else timeout
        try:
            outcome = run_process(
                config.popen_args(),
                use_shell=config.use_shell,
                env=config.env,
                input_text=EXTRACTION_PROMPT + text,
                timeout=timeout,
            )
        except OSError as e:
            return ParseResult.failure(f"LLM extraction could not start: {e}")
        if outcome.timed_out:
            return ParseResult.failure(f"LLM extraction timed out after {timeout:.0f}s")
        if outcome.returncode != 0:
            return ParseResult.failure(f"LLM extraction exited with code {outcome.returncode}")
        return extract_json(outcome.stdout, level=f"{level}:llm")

    def describe(self) -> dict[str, Any]:
        default = resolve_default_model(self.get_models())
        return {
            "id": self.provider_id,
            "name": self.display_name,
            "command": self.command,
            "default_model": default.id if default else None,
            "models": [
                {
                    "id": model.id,
                    "name": model.display_name,
                    "tier": model.tier,
                    "tagline": model.tagline,
                    "description": model.description,
                    "badge": model.display_badge,
                    "badgeClass": model.display_badge_class,
                }
                for model in self.get_models()
            ],
            "install_instructions": self.install_instructions,
        }


class ClaudeCodeProvider(AIProvider):
    """Claude Code CLI in print mode with stream-json output."""

    provider_id = "claude"
    display_name = "Claude"
    default_command = "claude"
    command_env_var = "REVIEWPIPE_CLAUDE_CMD"
    install_instructions = "Install Claude Code: npm install -g @anthropic-ai/claude-code"
    builtin_models = (
        ModelDefinition(id="haiku", name="Haiku", tier="fast"),
        ModelDefinition(id="sonnet", name="Sonnet", tier="balanced", default=True),
        ModelDefinition(id="opus", name="Opus", tier="thorough"),
    )

    def _model_args(self, model_id: str) -> list[str]:
        cli_model = self.resolve_cli_model(model_id)
        if not cli_model or cli_model == "default":
            return []
        return ["--model", cli_model]

    def base_args(self, model_id: str) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--verbose", "--include-partial-messages"]
        args += self._model_args(model_id)
        if self.yolo:
            args += ["--permission-mode", "bypassPermissions"]
        else:
            args += ["--allowedTools", ",".join(CLAUDE_ALLOWED_TOOLS)]
        return args

    def extraction_base_args(self, model_id: str) -> list[str]:
        return ["-p", "--output-format", "text", *self._model_args(model_id)]


class CursorAgentProvider(AIProvider):
    """Cursor Agent CLI with stream-json output and partial message streaming."""

    provider_id = "cursor-agent"
    display_name = "Cursor Agent"
    default_command = "agent"
    command_env_var = "REVIEWPIPE_CURSOR_AGENT_CMD"
    install_instructions = "Install Cursor Agent: curl https://cursor.com/install -fsS | bash"
    builtin_models = (
        ModelDefinition(id="gpt-5.2-codex-fast", name="GPT-5.2 Codex Fast", tier="fast"),
        ModelDefinition(id="sonnet-4.5-thinking", name="Sonnet 4.5 Thinking", tier="balanced", default=True),
        ModelDefinition(id="opus-4.5-thinking", name="Opus 4.5 Thinking", tier="thorough"),
        ModelDefinition(id="auto", name="Auto", tier="free"),
    )

    def _model_args(self, model_id: str) -> list[str]:
        cli_model = self.resolve_cli_model(model_id)
        if not cli_model or cli_model == "auto":
            return []
        return ["--model", cli_model]

    def base_args(self, model_id: str) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--stream-partial-output"]
        args += self._model_args(model_id)
        if self.yolo:
            args += ["--force"]
        else:
            args += ["--sandbox", "enabled"]
        return args

    def extraction_base_args(self, model_id: str) -> list[str]:
        return ["-p", "--output-format", "text", *self._model_args(model_id)]


class PiProvider(AIProvider):
    """Pi coding agent in JSON event mode."""

    provider_id = "pi"
    display_name = "Pi"
    default_command = "pi"
    command_env_var = "REVIEWPIPE_PI_CMD"
    install_instructions = "Install Pi: npm install -g @mariozechner/pi-coding-agent"
    builtin_models = (
        ModelDefinition(id="default", name="Default", tier="balanced", default=True, cli_model=None),
    )

    def _model_args(self, model_id: str) -> list[str]:
        cli_model = self.resolve_cli_model(model_id)
        if not cli_model:
            return []
        if "/" in cli_model:
            provider, _, name = cli_model.partition("/")
            return ["--provider", provider, "--model", name]
        return ["--model", cli_model]

    @staticmethod
    def _session_args() -> list[str]:
        return [] if os.environ.get("REVIEWPIPE_PI_SESSION") else ["--no-session"]

    def base_args(self, model_id: str) -> list[str]:
        args = ["-p", "--mode", "json", *self._model_args(model_id)]
        if not self.yolo:
            args += ["--tools", PI_TOOLS]
        args += self._session_args()
        args += ["--no-extensions", "--no-skills", "--no-prompt-templates"]
        return args

    def extraction_base_args(self, model_id: str) -> list[str]:
        return ["-p", "--mode", "text", *self._model_args(model_id), "--no-tools", *self._session_args()]

    def fixed_env(self) -> dict[str, str]:
        return {"PI_CMD": self.command, "PI_TASK_MAX_DEPTH": "1"}


PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    ClaudeCodeProvider.provider_id: ClaudeCodeProvider,
    CursorAgentProvider.provider_id: CursorAgentProvider,
    PiProvider.provider_id: PiProvider,
}


def get_provider_ids() -> list[str]:
    return list(PROVIDER_CLASSES)


def create_provider(
    provider_id: str, model: str | None = None, config: ProviderConfig | None = None
) -> AIProvider:
    """Factory function to create the appropriate provider.

    Args:
        provider_id: Registered provider identifier
        model: Model id; None selects the provider's default model
        config: Caller overrides for command, args, env, yolo and models

    Returns:
        Provider instance

    Raises:
        ValueError: If the provider id is not registered
    """
    provider_class = PROVIDER_CLASSES.get(provider_id)
    if provider_class is None:
        raise ValueError(f"Unsupported provider: {provider_id}")
    return provider_class(model=model, config=config)
