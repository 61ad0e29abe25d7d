"""
Script backend: plugins written in Lua, run by an embedded interpreter.

Each LuaPlugin owns exactly one lupa LuaRuntime for its whole lifetime.
The interpreter is locked down once, at construction:

    - memory is capped by the interpreter's allocator (``max_memory``)
    - every standard module not in ``allowed_modules`` is removed;
      removing ``package`` also removes require/dofile/loadfile. A
      stripped ``debug`` is replaced by a table holding only
      ``traceback``, which lupa's error handler looks up on every call
    - ``load`` only accepts text chunks and ``string.dump`` is removed
      unless ``debug`` is allowed
    - the ``python`` bridge global is removed and attribute access on
      Python objects is refused
    - ``print`` is routed to the host log

Every call into plugin code runs with a count hook armed that enforces
the per-call instruction limit and wall-clock timeout. Count hooks are
per thread, so when ``coroutine`` is allowed every coroutine created
by plugin code gets the same hook.

Entry file contract:

    local plugin = { id = "demo", name = "Demo", version = "1.0.0",
                     capabilities = { "commands" },
                     commands = { greet = { label = "Greet" } } }

    function plugin.init(ctx) ctx.log("ready in " .. ctx.app_name) end

    function plugin.on_event(event)
        if event.type == "command" and event.name == "demo:greet" then
            return { action = "notify", message = "Hello!", handled = true }
        end
    end

    function plugin.shutdown() end

    return plugin

Plugin code reaches the host through the global ``host`` table: log,
notify, read_file, get_state, set_state, get_selection, set_clipboard,
run_command. Refused or failed calls return ``nil, message``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from lupa import LuaError, LuaRuntime, lua_type

from termplug.capability import CapabilitySet
from termplug.context import PluginContext
from termplug.errors import (
    InvalidStateError,
    ManifestError,
    PluginError,
    ProtocolError,
    SandboxViolationError,
    ScriptError,
)
from termplug.plugin import (
    Backend,
    CommandParam,
    ParamType,
    PluginBase,
    PluginCommand,
    PluginKeybinding,
)
from termplug.protocol.event import PluginEvent, encode_event
from termplug.protocol.response import (
    NOTIFY_DURATION_MS,
    LogLevel,
    PluginResponse,
)
from termplug.sandbox import ALL_MODULES, SandboxConfig, SandboxPolicy, ViolationType

logger = logging.getLogger(__name__)

MAX_DEPTH = 32
HOOK_INTERVAL = 1000

_LOCKDOWN = """
function(stripped, report, print_fn, keep_dump, attach)
  local G = _G
  local raw_load, select, setmetatable, ipairs, error = load, select, setmetatable, ipairs, error
  local traceback = G.debug and G.debug.traceback
  local blocked = {}
  for i = 1, #stripped do
    local name = stripped[i]
    G[name] = nil
    if name == "debug" then
      G.debug = setmetatable({ traceback = traceback }, {
        __index = function()
          report("debug")
          return nil
        end,
      })
    else
      blocked[name] = true
    end
    if name == "package" then
      for _, fn in ipairs({ "require", "dofile", "loadfile" }) do
        blocked[fn] = true
        G[fn] = nil
      end
    end
  end
  G.load = function(chunk, chunkname, mode, ...)
    if select("#", ...) > 0 then
      return raw_load(chunk, chunkname, "t", ...)
    end
    return raw_load(chunk, chunkname, "t")
  end
  G.print = print_fn
  if not keep_dump and G.string then
    G.string.dump = nil
  end
  local co = G.coroutine
  if co then
    local create, resume = co.create, co.resume
    local function hooked_create(fn)
      return attach(create(fn))
    end
    local function unwrap(ok, ...)
      if not ok then
        error((...), 0)
      end
      return ...
    end
    co.create = hooked_create
    co.wrap = function(fn)
      local thread = hooked_create(fn)
      return function(...)
        return unwrap(resume(thread, ...))
      end
    end
  end
  setmetatable(G, {
    __index = function(_, key)
      if blocked[key] then
        report(key)
      end
      return nil
    end,
  })
end
"""

_HOOK_FACTORY = """
function(sethook, tick, interval)
  local error = error
  local function hook()
    local reason = tick()
    if reason then
      error(reason, 0)
    end
  end
  local function attach(thread)
    sethook(thread, hook, "", interval)
    return thread
  end
  local function arm(enable)
    if enable then
      sethook(hook, "", interval)
    else
      sethook()
    end
  end
  return arm, attach
end
"""


def _deny_attributes(obj: Any, attr_name: str, is_setting: bool) -> str:
    raise AttributeError(f"access to '{attr_name}' is not allowed")


def to_lua(runtime: LuaRuntime, value: Any, depth: int = 0) -> Any:
    """Convert JSON-compatible Python data into Lua values.

    Lists become 1-based sequence tables, dicts become tables.
    """
    if depth > MAX_DEPTH:
        raise ProtocolError("value is nested too deeply")
    if isinstance(value, dict):
        table = runtime.table()
        for key, item in value.items():
            table[key] = to_lua(runtime, item, depth + 1)
        return table
    if isinstance(value, (list, tuple)):
        table = runtime.table()
        for index, item in enumerate(value, 1):
            table[index] = to_lua(runtime, item, depth + 1)
        return table
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise ProtocolError(f"cannot pass {type(value).__name__} to plugin code")


def from_lua(value: Any, depth: int = 0) -> Any:
    """Convert Lua values into JSON-compatible Python data.

    Tables whose keys are exactly 1..n become lists. Other tables become
    dicts with string keys. Functions, userdata and threads are refused.

    Raises:
        ProtocolError: If the value cannot be represented.
    """
    if depth > MAX_DEPTH:
        raise ProtocolError("table is nested too deeply (or cyclic)")
    kind = lua_type(value)
    if kind == "table":
        items = list(value.items())
        keys = [k for k, _ in items]
        if items and all(isinstance(k, int) and not isinstance(k, bool) for k in keys):
            if sorted(keys) == list(range(1, len(keys) + 1)):
                return [from_lua(v, depth + 1) for _, v in sorted(items, key=lambda kv: kv[0])]
        return {_key_to_str(k): from_lua(v, depth + 1) for k, v in items}
    if kind is not None:
        raise ProtocolError(f"cannot convert Lua {kind} to data")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise ProtocolError(f"cannot convert {type(value).__name__} to data")


def _key_to_str(key: Any) -> str:
    if isinstance(key, bytes):
        return key.decode("utf-8", errors="replace")
    if isinstance(key, (str, int, float)) and not isinstance(key, bool):
        return str(key)
    raise ProtocolError(f"unsupported table key type: {type(key).__name__}")


def parse_response(data: Any) -> PluginResponse | None:
    """Map a table returned by ``on_event`` to a PluginResponse.

    Two shapes are accepted:

        { action = "notify", message = "Hi", handled = true }
        { action = { type = "notify", message = "Hi" }, handled = true }

    Anything else, including unknown actions, bad fields and a non-boolean
    ``handled``, maps to None.
    """
    if not isinstance(data, dict):
        return None

    action = data.get("action")
    if isinstance(action, str):
        fields = {k: v for k, v in data.items() if k not in ("action", "handled", "payload")}
        action = {"type": action, **fields}
        if action["type"] == "notify":
            action.setdefault("duration_ms", NOTIFY_DURATION_MS)
    elif action is None and "type" in data:
        action = {k: v for k, v in data.items() if k not in ("handled", "payload")}

    if not isinstance(action, dict):
        logger.debug(f"Ignoring plugin return without an action: {data!r}")
        return None

    handled = data.get("handled", False)
    if not isinstance(handled, bool):
        logger.debug(f"Ignoring plugin response with non-boolean handled: {handled!r}")
        return None

    wire: dict[str, Any] = {"action": action, "handled": handled}
    if data.get("payload") is not None:
        wire["payload"] = data["payload"]
    try:
        return PluginResponse.from_dict(wire)
    except ProtocolError as e:
        logger.debug(f"Ignoring malformed plugin response: {e}")
        return None


class _CallBudget:
    """Instruction and wall-clock budget for one call into plugin code."""

    def __init__(self, config: SandboxConfig, policy: SandboxPolicy):
        self._config = config
        self._policy = policy
        self.interval = max(1, min(HOOK_INTERVAL, config.instruction_limit))
        self.instructions = 0
        self.deadline = 0.0
        self.violation: ViolationType | None = None
        self.reason: str | None = None
        self.call = "load"

    def start(self, call: str) -> None:
        self.call = call
        self.instructions = 0
        self.deadline = time.monotonic() + self._config.timeout_ms / 1000.0
        self.violation = None
        self.reason = None

    def tick(self) -> str | None:
        if self.violation is not None:
            return self.reason
        self.instructions += self.interval
        if self.instructions > self._config.instruction_limit:
            self._exceeded(
                ViolationType.INSTRUCTION_LIMIT,
                f"instruction limit of {self._config.instruction_limit} exceeded",
            )
        elif time.monotonic() > self.deadline:
            self._exceeded(
                ViolationType.TIMEOUT,
                f"timeout of {self._config.timeout_ms}ms exceeded",
            )
        return self.reason

    def _exceeded(self, violation: ViolationType, reason: str) -> None:
        self.violation = violation
        self.reason = reason
        self._policy.record(violation, f"{self.call}: {reason}")


class LuaPlugin(PluginBase):
    """A plugin backed by a sandboxed Lua interpreter.

    Use LuaPlugin.load() to construct one from an entry file.
    """

    backend = Backend.SCRIPT

    def __init__(self, config: SandboxConfig, chunk_name: str = "plugin"):
        super().__init__()
        self.id = ""
        self.name = ""
        self.version = "0.0.0"
        self.description = None
        self.capabilities = CapabilitySet()
        self.source_path: Path | None = None
        self._config = config
        self._policy = SandboxPolicy(config)
        self._budget = _CallBudget(config, self._policy)
        self._commands: list[PluginCommand] = []
        self._keybindings: list[PluginKeybinding] = []
        self._lua: LuaRuntime | None = LuaRuntime(
            register_eval=False,
            register_builtins=False,
            unpack_returned_tuples=True,
            attribute_filter=_deny_attributes,
            max_memory=config.memory_limit,
        )
        self._plugin_table: Any = None
        self._chunk_name = chunk_name
        self._lockdown()

    # Construction

    @classmethod
    def load(cls, path: Path | str, config: SandboxConfig | None = None) -> LuaPlugin:
        """Load an entry file into a fresh sandboxed interpreter.

        Raises:
            OSError: If the file cannot be read.
            ScriptError: If the chunk does not compile or raises.
            SandboxViolationError: If loading exceeds a sandbox limit.
            ManifestError: If the chunk does not return a table with an id.
        """
        path = Path(path)
        source = path.read_text(encoding="utf-8")
        plugin = cls(config or SandboxConfig.default(), chunk_name=path.name)
        plugin.source_path = path
        plugin._evaluate(source)
        logger.info(f"Loaded script plugin {plugin.id}@{plugin.version} from {path}")
        return plugin

    @classmethod
    def from_source(cls, source: str, config: SandboxConfig | None = None, name: str = "plugin") -> LuaPlugin:
        """Load a plugin from source text instead of a file."""
        plugin = cls(config or SandboxConfig.default(), chunk_name=name)
        plugin._evaluate(source)
        return plugin

    def _lockdown(self) -> None:
        lua = self._require_lua()
        g = lua.globals()
        self._raw_load = g["load"]
        sethook = g["debug"]["sethook"]
        self._arm, attach = lua.eval(_HOOK_FACTORY)(
            sethook, self._budget.tick, self._budget.interval
        )

        stripped = sorted(m for m in ALL_MODULES if not self._config.is_module_allowed(m))
        g["python"] = None
        lua.eval(_LOCKDOWN)(
            to_lua(lua, stripped),
            self._report_module,
            self._print,
            self._config.is_module_allowed("debug"),
            attach,
        )
        g["host"] = self._host_table()

    def _evaluate(self, source: str) -> None:
        with self._guard("load"):
            result = self._raw_load(source, f"@{self._chunk_name}", "t")
            if isinstance(result, tuple):
                message = result[1] if len(result) > 1 else "could not compile chunk"
                raise ScriptError(str(message), None, "load")
            table = _first(result())
            if lua_type(table) != "table":
                raise ManifestError("Plugin entry must return a table")
            self._read_metadata(table)
            self._plugin_table = table

    def _read_metadata(self, table: Any) -> None:
        plugin_id = table["id"]
        if not isinstance(plugin_id, str) or not plugin_id.strip():
            raise ManifestError("Missing plugin.id")
        self.id = plugin_id
        self._policy.plugin_id = plugin_id

        name = table["name"]
        self.name = name if isinstance(name, str) and name else plugin_id
        version = table["version"]
        self.version = str(version) if isinstance(version, (str, int, float)) else "0.0.0"
        description = table["description"]
        self.description = description if isinstance(description, str) else None

        try:
            caps = from_lua(table["capabilities"])
            commands = from_lua(table["commands"])
            keybindings = from_lua(table["keybindings"])
        except ProtocolError as e:
            raise ManifestError(f"Invalid plugin metadata: {e.message}", plugin_id) from e

        if isinstance(caps, list):
            self.capabilities = CapabilitySet.from_names([str(c) for c in caps])
        self._commands = self._parse_commands(commands)
        self._keybindings = self._parse_keybindings(keybindings)

    def _parse_commands(self, data: Any) -> list[PluginCommand]:
        entries: list[tuple[str, dict[str, Any]]] = []
        if isinstance(data, dict):
            entries = [(k, v) for k, v in data.items() if isinstance(v, dict)]
        elif isinstance(data, list):
            entries = [(v["id"], v) for v in data if isinstance(v, dict) and isinstance(v.get("id"), str)]

        commands = []
        for local_id, spec in sorted(entries, key=lambda e: e[0]):
            label = spec.get("label")
            description = spec.get("description")
            keywords = spec.get("keywords")
            commands.append(
                PluginCommand(
                    id=f"{self.id}:{local_id}",
                    label=label if isinstance(label, str) else local_id,
                    description=description if isinstance(description, str) else None,
                    keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
                    category=self.name,
                    params=self._parse_params(spec.get("params")),
                )
            )
        return commands

    def _parse_params(self, data: Any) -> list[CommandParam]:
        if not isinstance(data, list):
            return []
        params = []
        for entry in data:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                continue
            try:
                param_type = ParamType(entry.get("type", ParamType.STRING.value))
            except ValueError:
                logger.debug(f"Skipping parameter with unknown type in {self.id}: {entry!r}")
                continue
            description = entry.get("description")
            choices = entry.get("choices")
            params.append(
                CommandParam(
                    name=entry["name"],
                    description=description if isinstance(description, str) else "",
                    param_type=param_type,
                    required=entry.get("required") is True,
                    default=entry.get("default"),
                    choices=[str(c) for c in choices] if isinstance(choices, list) else [],
                )
            )
        return params

    def _parse_keybindings(self, data: Any) -> list[PluginKeybinding]:
        if not isinstance(data, list):
            return []
        bindings = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            keys, command = entry.get("keys"), entry.get("command")
            if isinstance(keys, str) and isinstance(command, str):
                context = entry.get("context")
                bindings.append(
                    PluginKeybinding(
                        keys=keys,
                        command=command if ":" in command else f"{self.id}:{command}",
                        context=context if isinstance(context, str) else None,
                    )
                )
        return bindings

    # Lifecycle hooks

    def on_init(self, ctx: PluginContext) -> None:
        with self._guard("init"):
            lua = self._require_lua()
            ctx_table = to_lua(
                lua,
                {
                    "app_name": ctx.app_name,
                    "app_version": ctx.app_version,
                    "plugin_id": self.id,
                    "data_dir": str(ctx.data_dir),
                    "config_dir": str(ctx.config_dir),
                },
            )
            ctx_table["log"] = self._host_log
            init = self._plugin_table["init"]
            if lua_type(init) == "function":
                init(ctx_table)

    def handle_event(self, event: PluginEvent) -> PluginResponse | None:
        with self._guard("on_event"):
            handler = self._plugin_table["on_event"]
            if lua_type(handler) != "function":
                return None
            result = _first(handler(to_lua(self._require_lua(), encode_event(event))))
            if result is None:
                return None
            try:
                data = from_lua(result)
            except ProtocolError as e:
                logger.debug(f"Plugin {self.id} returned unconvertible value: {e}")
                return None
        return parse_response(data)

    def on_shutdown(self) -> None:
        try:
            with self._guard("shutdown"):
                shutdown = self._plugin_table["shutdown"]
                if lua_type(shutdown) == "function":
                    shutdown()
        finally:
            self._release()

    def get_commands(self) -> list[PluginCommand]:
        return list(self._commands)

    def get_keybindings(self) -> list[PluginKeybinding]:
        return list(self._keybindings)

    @property
    def policy(self) -> SandboxPolicy:
        return self._policy

    @property
    def sandbox(self) -> SandboxConfig:
        return self._config

    # Call guard

    def _require_lua(self) -> LuaRuntime:
        if self._lua is None:
            raise InvalidStateError("interpreter has been released", self.id or None)
        return self._lua

    def _release(self) -> None:
        self._plugin_table = None
        self._arm = None
        self._raw_load = None
        self._lua = None

    @contextmanager
    def _guard(self, call: str) -> Iterator[None]:
        """Run plugin code with limits armed and map failures to errors."""
        self._require_lua()
        self._budget.start(call)
        self._arm(True)
        try:
            yield
        except MemoryError as e:
            self._policy.record(
                ViolationType.MEMORY_LIMIT,
                f"{call}: memory limit of {self._config.memory_limit} bytes exceeded",
            )
            raise SandboxViolationError(
                ViolationType.MEMORY_LIMIT, "memory limit exceeded", self.id or None, call
            ) from e
        except LuaError as e:
            if self._budget.violation is not None:
                raise SandboxViolationError(
                    self._budget.violation, self._budget.reason or str(e), self.id or None, call
                ) from e
            raise ScriptError(str(e), self.id or None, call) from e
        finally:
            if self._arm is not None:
                self._arm(False)
        if self._budget.violation is not None:
            raise SandboxViolationError(
                self._budget.violation, self._budget.reason or "limit exceeded", self.id or None, call
            )

    # Host namespace

    def _host_table(self) -> Any:
        lua = self._require_lua()
        table = lua.table()
        table["log"] = self._host_log
        table["notify"] = self._host_notify
        table["read_file"] = self._host_read_file
        table["get_state"] = self._host_get_state
        table["set_state"] = self._host_set_state
        table["get_selection"] = self._host_get_selection
        table["set_clipboard"] = self._host_set_clipboard
        table["run_command"] = self._host_run_command
        return table

    def _plugin_logger(self) -> logging.Logger:
        return logging.getLogger(f"termplug.plugins.{self.id or 'loading'}")

    def _report_module(self, name: Any) -> None:
        self._policy.check_module(str(name))

    def _print(self, *args: Any) -> None:
        self._host_log("\t".join(_display(a) for a in args))

    def _host_log(self, message: Any = "", level: Any = None) -> None:
        text = _display(message)
        try:
            log_level = LogLevel(level) if isinstance(level, str) else LogLevel.INFO
        except ValueError:
            log_level = LogLevel.INFO
        if self._ctx is not None:
            self._ctx.log(log_level, f"[{self.id}] {text}")
        else:
            self._plugin_logger().log(log_level.logging_level, text)

    def _host_notify(self, message: Any = "") -> None:
        text = _display(message)
        if self._ctx is not None:
            self._ctx.notify(text)
        else:
            self._plugin_logger().info(f"[notify] {text}")

    def _host_read_file(self, path: Any) -> Any:
        if not isinstance(path, str):
            return None, "path must be a string"
        if not self._policy.check_path(path):
            return None, f"permission denied: {path}"
        target = Path(path).expanduser()
        try:
            if target.stat().st_size > self._config.memory_limit:
                return None, f"file too large: {path}"
            return target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return None, f"cannot read {path}: {e.strerror or e}"

    def _host_get_state(self, key: Any) -> Any:
        if self._ctx is None:
            return None, "host context not available before init"
        if not isinstance(key, str):
            return None, "key must be a string"
        value = self._ctx.get_state(self._state_key(key))
        return to_lua(self._require_lua(), value)

    def _host_set_state(self, key: Any, value: Any = None) -> Any:
        if self._ctx is None:
            return None, "host context not available before init"
        if not isinstance(key, str):
            return None, "key must be a string"
        try:
            data = from_lua(value)
        except ProtocolError as e:
            return None, e.message
        if data is None:
            self._ctx.remove_state(self._state_key(key))
        else:
            self._ctx.set_state(self._state_key(key), data)
        return True

    def _host_get_selection(self) -> Any:
        if self._ctx is None:
            return None
        return self._ctx.get_selection()

    def _host_set_clipboard(self, text: Any) -> Any:
        if self._ctx is None:
            return None, "host context not available before init"
        try:
            self._ctx.set_clipboard(_display(text))
        except PluginError as e:
            return None, e.message
        return True

    def _host_run_command(self, name: Any, args: Any = None) -> Any:
        if self._ctx is None:
            return None, "host context not available before init"
        if not isinstance(name, str):
            return None, "command name must be a string"
        try:
            data = from_lua(args) if args is not None else {}
        except ProtocolError as e:
            return None, e.message
        if not isinstance(data, dict):
            return None, "command args must be a table of named values"
        try:
            self._ctx.run_command(name, data)
        except PluginError as e:
            return None, e.message
        return True

    def _state_key(self, key: str) -> str:
        return f"{self.id}:{key}"

    def __repr__(self) -> str:
        return (
            f"<LuaPlugin {self.id}@{self.version} state={self.state.value} "
            f"violations={len(self._policy.violations)}>"
        )


def _first(result: Any) -> Any:
    if isinstance(result, tuple):
        return result[0] if result else None
    return result


def _display(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "true" if value else "false"
    kind = lua_type(value)
    if kind is not None:
        return f"<{kind}>"
    return str(value)
