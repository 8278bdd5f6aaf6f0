"""
The module loader: resolves identifiers, evaluates modules in isolation and
links their exported functions, following declared dependencies.

Modules form a graph kept as an arena of ModuleNode records keyed by resolved
location, plus an edge map (location -> dependency locations). Cycles are
found by checking the active resolution stack, and before waiting on a load
owned by another task, by following edges from that module back to the
stack. Either way a cycle fails fast instead of waiting on itself.
"""
import asyncio
import hashlib
import importlib
import importlib.util
import inspect
import os
import re
import threading
import types
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin

import pystache

from rexa.rexa_errors import ModuleLoadError, CircularDependencyError
from rexa.rexa_datatypes import (
    FunctionEntry, FunctionMetadata, ModuleNode, ModuleState,
)

_REGISTRY_RE = re.compile(r'^(?:registry:)?(?P<name>[A-Za-z0-9_][\w.\-/]*)@(?P<version>[\w.\-]+)$')

DEFAULT_EXTENSIONS = (".rexa", ".py")


class ModuleLoader:
    """Loads `REQUIRE`d libraries. One loader may be shared by many runners."""

    _shared: Optional['ModuleLoader'] = None
    _shared_lock = threading.Lock()

    def __init__(self, *, registry_url: Optional[str] = None, http_config: Optional[Dict[str, Any]] = None,
                 fetcher: Optional[Callable[[str], Awaitable[str]]] = None):
        self.registry_url = registry_url
        self.http_config = dict(http_config or {})
        self._fetcher = fetcher
        self.nodes: Dict[str, ModuleNode] = {}
        self.edges: Dict[str, Set[str]] = {}
        # Number of times each location's code has actually been evaluated
        self.executions: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._pending: Dict[str, asyncio.Future] = {}

    @classmethod
    def shared(cls) -> 'ModuleLoader':
        """The process-wide loader used by runners that are not given their own."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
            return cls._shared

    @classmethod
    def reset_shared(cls):
        with cls._shared_lock:
            cls._shared = None

    def _dbg(self, *parts):
        import sys
        if os.environ.get("REXA_DEBUG"):
            print("[DBG]", "loader", *parts, file=sys.stderr)

    # ---------------------------------------------------------------
    # Identifier resolution
    # ---------------------------------------------------------------

    def locate(self, identifier: str, base_dir: Optional[str] = None) -> Tuple[str, str, str]:
        """Resolve an identifier to `(origin, location, language)`.

        origin is 'file', 'url' or 'py'; language is 'python' or 'script'.
        """
        ident = identifier.strip()
        if not ident:
            raise ModuleLoadError("Empty module identifier", identifier=identifier)
        if ident.startswith("py:"):
            return "py", ident, "python"
        if ident.startswith(("http://", "https://")):
            return "url", ident, _language_of(ident)
        m = _REGISTRY_RE.match(ident)
        if m and not ident.startswith((".", "/", "file://")):
            template = self.registry_url or os.environ.get("REXA_REGISTRY_URL")
            if not template:
                raise ModuleLoadError(f"No module registry configured for {ident}", identifier=identifier)
            renderer = pystache.Renderer(escape=lambda u: u)
            url = renderer.render(template, {"name": m.group("name"), "version": m.group("version")})
            return "url", url, _language_of(url)
        if base_dir and base_dir.startswith(("http://", "https://")) and not ident.startswith(("/", "file://")):
            url = urljoin(base_dir if base_dir.endswith("/") else base_dir + "/", ident)
            return "url", url, _language_of(url)
        from rexa.rexa_file import resolve_locator
        path = resolve_locator(ident, base_dir)
        if not os.path.splitext(path)[1]:
            for ext in DEFAULT_EXTENSIONS:
                if os.path.isfile(path + ext):
                    path = path + ext
                    break
        return "file", path, _language_of(path)

    # ---------------------------------------------------------------
    # Loading
    # ---------------------------------------------------------------

    async def require(self, identifier: str, *, base_dir: Optional[str] = None,
                      stack: Optional[List[Tuple[str, str]]] = None) -> Dict[str, FunctionEntry]:
        """Load `identifier` (and its dependencies) and return its exported entries.

        `stack` is the active resolution path of `(identifier, location)` pairs.
        """
        stack = list(stack or [])
        origin, location, language = self.locate(identifier, base_dir)

        on_stack = [loc for _, loc in stack]
        if location in on_stack:
            start = on_stack.index(location)
            cycle = [ident for ident, _ in stack[start:]] + [identifier]
            raise CircularDependencyError(cycle)

        with self._lock:
            node = self.nodes.get(location)
            if node is not None and node.state is ModuleState.LOADED:
                self._dbg("cache hit", location)
                return dict(node.functions)
            waiting = self._pending.get(location) if node is not None and node.state is ModuleState.LOADING else None
            if waiting is not None:
                # A load owned by another task that leads back to this stack would never finish
                path = self._path_to(location, set(on_stack))
                if path is not None:
                    start = on_stack.index(path[-1])
                    cycle = ([ident for ident, _ in stack[start:]] + [identifier]
                             + [self.nodes[loc].identifier for loc in path[1:]])
                    raise CircularDependencyError(cycle)
            else:
                node = ModuleNode(identifier, location, state=ModuleState.LOADING)
                self.nodes[location] = node
                future = asyncio.get_running_loop().create_future()
                self._pending[location] = future
        if waiting is not None:
            return dict(await asyncio.shield(waiting))

        try:
            functions = await self._load(node, origin, language, base_dir, stack + [(identifier, location)])
        except Exception as e:
            # Loader errors from dependencies (including cycles) keep their own identity
            if isinstance(e, ModuleLoadError):
                error = e
            else:
                error = ModuleLoadError(f"Failed to load module {identifier}: {e}", identifier=identifier, cause=e)
            self._fail(node, future, error)
            if error is e:
                raise
            raise error from e
        except BaseException:
            self._fail(node, future, ModuleLoadError(f"Loading module {identifier} was interrupted",
                                                     identifier=identifier))
            raise
        else:
            node.functions = functions
            node.state = ModuleState.LOADED
            node.error = None
            future.set_result(functions)
            return dict(functions)
        finally:
            with self._lock:
                self._pending.pop(location, None)

    def _path_to(self, location: str, targets: Set[str]) -> Optional[List[str]]:
        """Locations from `location` along dependency edges to one of `targets`, or None."""
        parents: Dict[str, Optional[str]] = {location: None}
        queue = [location]
        while queue:
            current = queue.pop(0)
            if current in targets:
                path = [current]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                return path[::-1]
            for nxt in sorted(self.edges.get(current, ())):
                if nxt not in parents:
                    parents[nxt] = current
                    queue.append(nxt)
        return None

    @staticmethod
    def _fail(node: ModuleNode, future: asyncio.Future, error: ModuleLoadError):
        node.state = ModuleState.FAILED
        node.functions = {}
        node.error = error
        future.set_exception(error)
        future.exception()  # retrieved here; concurrent waiters re-raise it

    async def _load(self, node: ModuleNode, origin: str, language: str, base_dir: Optional[str],
                    stack: List[Tuple[str, str]]) -> Dict[str, FunctionEntry]:
        location = node.location
        self._dbg("load", node.identifier, "->", location)
        if origin == "py":
            module = importlib.import_module(location[3:])
            self._count(location)
            exports, requires, metadata = _python_exports(module)
            dep_base = base_dir
        elif language == "python":
            source = await self._read(origin, location)
            module = self._exec_python(location, origin, source)
            exports, requires, metadata = _python_exports(module)
            dep_base = _parent_of(origin, location)
        else:
            source = await self._read(origin, location)
            return await self._load_script(node, origin, source, stack)

        node.dependencies = list(requires)
        for dep in requires:
            await self._require_dependency(node, dep, dep_base, stack)
        functions: Dict[str, FunctionEntry] = {}
        for name, func in exports.items():
            if not callable(func):
                raise ModuleLoadError(f"Export {name!r} of {node.identifier} is not callable",
                                      identifier=node.identifier)
            meta = FunctionMetadata.from_dict(metadata.get(name) or metadata.get(name.upper()),
                                              module=node.identifier)
            entry = FunctionEntry.from_callable(name, "required", func, metadata=meta, source=location)
            functions[entry.name] = entry
        return functions

    async def _require_dependency(self, node: ModuleNode, dep: str, base: Optional[str],
                                  stack: List[Tuple[str, str]]) -> Dict[str, FunctionEntry]:
        _, dep_location, _ = self.locate(dep, base)
        with self._lock:
            self.edges.setdefault(node.location, set()).add(dep_location)
        return await self.require(dep, base_dir=base, stack=stack)

    async def _load_script(self, node: ModuleNode, origin: str, source: str,
                           stack: List[Tuple[str, str]]) -> Dict[str, FunctionEntry]:
        # Lazy import: the runtime imports this module
        from rexa.rexa_runtime import ScriptRunner
        from rexa.rexa_parser import parse

        program = parse(source)
        source_dir = _parent_of(origin, node.location)
        node.dependencies = []

        async def require_dependency(identifier: str):
            node.dependencies.append(identifier)
            return await self._require_dependency(node, identifier, source_dir, stack)

        # The top level runs once here; REQUIREs are followed as they execute
        runner = ScriptRunner(module_loader=self)
        runner.source_dir = source_dir
        runner.evaluator.require_hook = require_dependency
        self._count(node.location)
        await runner.run_module(program)

        module = _ScriptModule(self, program, source_dir, runner.required.entries())
        functions: Dict[str, FunctionEntry] = {}
        for label in runner.evaluator.labels:
            functions[label] = FunctionEntry(
                name=label, kind="required", thunk=module.thunk(label),
                variadic=True, extra_named=True, source=node.location,
                metadata=FunctionMetadata(module=node.identifier, category="script"),
            )
        return functions

    async def _read(self, origin: str, location: str) -> str:
        if origin == "url":
            fetch = self._fetcher
            if fetch is None:
                from rexa.rexa_http import fetch_text

                async def fetch(url):
                    return await fetch_text(url, config=self.http_config)
            return await fetch(location)
        from rexa.rexa_file import read_text
        _, text = read_text(location)
        return text

    def _exec_python(self, location: str, origin: str, source: str) -> types.ModuleType:
        digest = hashlib.sha1(location.encode("utf-8")).hexdigest()[:12]
        name = f"rexa_module_{digest}"
        if origin == "file":
            spec = importlib.util.spec_from_file_location(name, location)
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        else:
            module = types.ModuleType(name)
            module.__file__ = location
            exec(compile(source, location, "exec"), module.__dict__)
        self._count(location)
        return module

    def _count(self, location: str):
        with self._lock:
            self.executions[location] = self.executions.get(location, 0) + 1

    # ---------------------------------------------------------------
    # Introspection
    # ---------------------------------------------------------------

    def state_of(self, identifier: str, base_dir: Optional[str] = None) -> Optional[ModuleState]:
        _, location, _ = self.locate(identifier, base_dir)
        node = self.nodes.get(location)
        return node.state if node is not None else None

    def node_for(self, identifier: str, base_dir: Optional[str] = None) -> Optional[ModuleNode]:
        _, location, _ = self.locate(identifier, base_dir)
        return self.nodes.get(location)

    def dependencies_of(self, location: str) -> Set[str]:
        with self._lock:
            return set(self.edges.get(location, ()))


def _language_of(location: str) -> str:
    path = location.split("?", 1)[0]
    return "python" if path.endswith(".py") else "script"


def _parent_of(origin: str, location: str) -> str:
    if origin == "url":
        return location.rsplit("/", 1)[0] + "/"
    return os.path.dirname(location) or os.getcwd()


def _python_exports(module: types.ModuleType) -> Tuple[Dict[str, Callable], List[str], Dict[str, dict]]:
    exports = getattr(module, "EXPORTS", None)
    if exports is None:
        exports = {
            name: obj for name, obj in vars(module).items()
            if not name.startswith("_") and inspect.isfunction(obj) and obj.__module__ == module.__name__
        }
    requires = getattr(module, "REQUIRES", None) or getattr(module, "DEPENDENCIES", None) or []
    metadata = getattr(module, "METADATA", None) or {}
    if isinstance(requires, str):
        requires = [requires]
    return dict(exports), [str(r) for r in requires], dict(metadata)


class _ScriptModule:
    """A loaded `.rexa` module. Each call runs on a runner of its own."""

    def __init__(self, loader: ModuleLoader, program, source_dir: str, required: List[FunctionEntry]):
        self.loader = loader
        self.program = program
        self.source_dir = source_dir
        self.required = required

    def runner(self):
        from rexa.rexa_runtime import ScriptRunner
        runner = ScriptRunner(module_loader=self.loader)
        runner.source_dir = self.source_dir
        runner.required.update(self.required)
        runner.prepare(self.program)
        return runner

    def thunk(self, label: str):
        async def call(*args, **kwargs):
            return await self.runner().call(label, *args, **kwargs)
        call.__name__ = label
        return call
