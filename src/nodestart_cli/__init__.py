#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "typer",
#     "rich",
#     "platformdirs",
#     "readchar",
#     "httpx",
#     "truststore",
#     "pydantic",
# ]
# ///
"""
Nodestart CLI - Boilerplate generator for TypeScript Node.js servers

Usage:
    uvx nodestart-cli.py
    uvx nodestart-cli.py init <project-name> --framework fastify

Or install globally:
    uv tool install --from nodestart-cli.py nodestart-cli
    nodestart
    nodestart init <project-name>
"""

import os
import subprocess
import sys
import json
import shutil
import copy
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

import typer
import httpx
import platformdirs
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.live import Live
from rich.align import Align
from rich.table import Table
from rich.tree import Tree
from typer.core import TyperGroup

# For cross-platform keyboard input
import readchar
import ssl
import truststore

ssl_context = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)

# Constants
PACKAGE_MANAGER_CHOICES = {
    "npm": "npm (bundled with Node.js)",
    "yarn": "Yarn",
    "pnpm": "pnpm (fast, disk space efficient)",
}
FRAMEWORK_CHOICES = {
    "express": "Express - minimal and flexible",
    "fastify": "Fastify - fast and low overhead",
}
CONFIG_FILE_CHOICES = {
    "eslint": ".eslintrc.json",
    "prettier": ".prettierrc.json",
    "tsconfig": "tsconfig.json",
}

# How each package manager runs a locally installed binary
EXEC_PREFIXES = {"npm": "npx", "yarn": "yarn", "pnpm": "pnpm exec"}
OUTDATED_COMMANDS = {
    "npm": ["npm", "outdated", "--json"],
    "yarn": ["yarn", "outdated", "--json"],
    "pnpm": ["pnpm", "outdated", "--format", "json"],
}
# yarn v1 has no `update` command
UPDATE_COMMANDS = {
    "npm": ["npm", "update"],
    "yarn": ["yarn", "upgrade"],
    "pnpm": ["pnpm", "update"],
}

SERVER_PORT = 3000
INITIAL_VERSION = "1.0.0"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"
CONFIG_ENV_VAR = "NODESTART_CONFIG"

# Pinned defaults used whenever the latest version cannot be resolved
BASE_DEV_DEPENDENCIES = {
    "@types/node": "^20.12.7",
    "@typescript-eslint/eslint-plugin": "7.7.0",
    "@typescript-eslint/parser": "7.7.0",
    "eslint": "8.57.0",
    "eslint-config-prettier": "9.1.0",
    "husky": "9.0.11",
    "lint-staged": "15.2.2",
    "prettier": "3.2.5",
    "tsup": "8.0.2",
    "tsx": "4.7.2",
    "typescript": "5.4.5",
    "vitest": "1.5.0",
}
FRAMEWORK_DEPENDENCIES = {
    "express": {
        "dependencies": {"express": "^4.19.2"},
        "devDependencies": {"@types/express": "^4.17.21"},
    },
    "fastify": {
        "dependencies": {"fastify": "^4.26.2"},
        "devDependencies": {},
    },
}
FRAMEWORK_PLUGINS = {
    "express": {},
    "fastify": {
        "@fastify/cors": "^9.0.1",
        "@fastify/swagger": "^8.14.0",
        "@fastify/swagger-ui": "^3.0.0",
        "fastify-type-provider-zod": "^1.1.9",
        "zod": "^3.23.8",
    },
}
DEFAULT_PRETTIER_RULES = {"semi": False, "singleQuote": False, "tabWidth": 2}
# eslint 9 ignores .eslintrc.json, so it stays on the pinned 8.x line
PINNED_DURING_RESOLUTION = ("eslint",)

# ASCII Art Banner
BANNER = """
███╗   ██╗ ██████╗ ██████╗ ███████╗███████╗████████╗ █████╗ ██████╗ ████████╗
████╗  ██║██╔═══██╗██╔══██╗██╔════╝██╔════╝╚══██╔══╝██╔══██╗██╔══██╗╚══██╔══╝
██╔██╗ ██║██║   ██║██║  ██║█████╗  ███████╗   ██║   ███████║██████╔╝   ██║
██║╚██╗██║██║   ██║██║  ██║██╔══╝  ╚════██║   ██║   ██╔══██║██╔══██╗   ██║
██║ ╚████║╚██████╔╝██████╔╝███████╗███████║   ██║   ██║  ██║██║  ██║   ██║
╚═╝  ╚═══╝ ╚═════╝ ╚═════╝ ╚══════╝╚══════╝   ╚═╝   ╚═╝  ╚═╝╚═╝  ╚═╝   ╚═╝
"""

TAGLINE = "Optimized, lightweight TypeScript boilerplate for quick Node.js starts"


class ConfigError(Exception):
    """Raised when the user configuration file cannot be used."""


@dataclass(frozen=True)
class ProjectRequest:
    name: str
    package_manager: str
    framework: str


@dataclass(frozen=True)
class FileArtifact:
    relative_path: Path
    content: str
    executable: bool = False


@dataclass(frozen=True)
class OutdatedPackage:
    name: str
    current: str = ""
    wanted: str = ""
    latest: str = ""
    location: str = ""


PackageManagerName = Literal["npm", "yarn", "pnpm"]
FrameworkName = Literal["express", "fastify"]
ConfigFileName = Literal["eslint", "prettier", "tsconfig"]
VersionSource = Literal["package-manager", "registry"]
Version = Annotated[str, Field(min_length=1)]


class GeneratorSettings(BaseModel):
    """Every knob that differs between generator flavours.

    Loaded from the user config file (see :func:`settings_path`) and then
    overridden by command line flags. Validation is strict, so ``"yes"`` is
    not a bool and ``"2"`` is not a worker count.
    """

    model_config = ConfigDict(strict=True)

    default_package_manager: PackageManagerName = Field(default="pnpm")
    default_framework: FrameworkName = Field(default="fastify")
    resolve_versions: bool = Field(default=True, description="Look up the latest version of each dependency")
    auto_install: bool = Field(default=True)
    update_outdated: bool = Field(default=True)
    config_files: tuple[ConfigFileName, ...] = Field(default=tuple(CONFIG_FILE_CHOICES))
    prettier: dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_PRETTIER_RULES))
    framework_plugins: dict[str, dict[str, Version]] = Field(
        default_factory=lambda: copy.deepcopy(FRAMEWORK_PLUGINS),
        description="Companion packages per framework; a framework listed here replaces its default set",
    )
    pinned_packages: tuple[str, ...] = Field(
        default=PINNED_DURING_RESOLUTION,
        description="Packages that always keep their pinned version",
    )
    resolver_workers: int = Field(default=1, ge=1, description="Concurrent version lookups")
    version_source: VersionSource = Field(default="package-manager")
    registry_url: str = Field(default=DEFAULT_REGISTRY_URL)

    @field_validator("framework_plugins")
    @classmethod
    def _keep_unlisted_frameworks(cls, value: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
        merged = copy.deepcopy(FRAMEWORK_PLUGINS)
        merged.update(value)
        return merged


def settings_path() -> Path:
    """Return the config file path (env override first, then the platform config dir)."""
    override = (os.getenv(CONFIG_ENV_VAR) or "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_config_dir("nodestart")) / "config.json"


def _describe_validation(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "config"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


def load_settings(path: Path | None = None) -> GeneratorSettings:
    """Build settings from defaults plus the JSON config file, if one exists."""
    path = path or settings_path()
    if not path.is_file():
        return GeneratorSettings()
    try:
        return GeneratorSettings.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"{path}: {_describe_validation(e)}") from e


def with_overrides(settings: GeneratorSettings, **overrides) -> GeneratorSettings:
    """Return a revalidated copy of *settings* with *overrides* applied."""
    try:
        return GeneratorSettings.model_validate_json(settings.model_copy(update=overrides).model_dump_json())
    except ValidationError as e:
        raise ConfigError(_describe_validation(e)) from e


class StepTracker:
    """Track and render hierarchical steps without emojis.
    Supports live auto-refresh via an attached refresh callback.
    """
    def __init__(self, title: str):
        self.title = title
        self.steps = []  # list of dicts: {key, label, status, detail}
        self._refresh_cb = None  # callable to trigger UI refresh

    def attach_refresh(self, cb):
        self._refresh_cb = cb

    def add(self, key: str, label: str):
        if key not in [s["key"] for s in self.steps]:
            self.steps.append({"key": key, "label": label, "status": "pending", "detail": ""})
            self._maybe_refresh()

    def start(self, key: str, detail: str = ""):
        self._update(key, status="running", detail=detail)

    def complete(self, key: str, detail: str = ""):
        self._update(key, status="done", detail=detail)

    def error(self, key: str, detail: str = ""):
        self._update(key, status="error", detail=detail)

    def skip(self, key: str, detail: str = ""):
        self._update(key, status="skipped", detail=detail)

    def status_of(self, key: str) -> str | None:
        for s in self.steps:
            if s["key"] == key:
                return s["status"]
        return None

    def _update(self, key: str, status: str, detail: str):
        for s in self.steps:
            if s["key"] == key:
                s["status"] = status
                if detail:
                    s["detail"] = detail
                self._maybe_refresh()
                return
        # If not present, add it
        self.steps.append({"key": key, "label": key, "status": status, "detail": detail})
        self._maybe_refresh()

    def _maybe_refresh(self):
        if self._refresh_cb:
            self._refresh_cb()

    def render(self):
        tree = Tree(f"[cyan]{self.title}[/cyan]", guide_style="grey50")
        for step in self.steps:
            label = step["label"]
            detail_text = step["detail"].strip() if step["detail"] else ""

            status = step["status"]
            if status == "done":
                symbol = "[green]●[/green]"
            elif status == "pending":
                symbol = "[green dim]○[/green dim]"
            elif status == "running":
                symbol = "[cyan]○[/cyan]"
            elif status == "error":
                symbol = "[red]●[/red]"
            elif status == "skipped":
                symbol = "[yellow]○[/yellow]"
            else:
                symbol = " "

            if status == "pending":
                if detail_text:
                    line = f"{symbol} [bright_black]{label} ({detail_text})[/bright_black]"
                else:
                    line = f"{symbol} [bright_black]{label}[/bright_black]"
            else:
                if detail_text:
                    line = f"{symbol} [white]{label}[/white] [bright_black]({detail_text})[/bright_black]"
                else:
                    line = f"{symbol} [white]{label}[/white]"

            tree.add(line)
        return tree


def get_key():
    """Get a single keypress in a cross-platform way using readchar."""
    key = readchar.readkey()

    # Arrow keys
    if key == readchar.key.UP:
        return 'up'
    if key == readchar.key.DOWN:
        return 'down'

    # Enter/Return
    if key == readchar.key.ENTER:
        return 'enter'

    # Escape
    if key == readchar.key.ESC:
        return 'escape'

    # Ctrl+C
    if key == readchar.key.CTRL_C:
        raise KeyboardInterrupt

    return key


def select_with_arrows(options: dict, prompt_text: str = "Select an option", default_key: str = None) -> str:
    """
    Interactive selection using arrow keys with Rich Live display.

    Args:
        options: Dict with keys as option keys and values as descriptions
        prompt_text: Text to show above the options
        default_key: Default option key to start with

    Returns:
        Selected option key
    """
    option_keys = list(options.keys())
    if default_key and default_key in option_keys:
        selected_index = option_keys.index(default_key)
    else:
        selected_index = 0

    selected_key = None

    def create_selection_panel():
        """Create the selection panel with current selection highlighted."""
        table = Table.grid(padding=(0, 2))
        table.add_column(style="cyan", justify="left", width=3)
        table.add_column(style="white", justify="left")

        for i, key in enumerate(option_keys):
            if i == selected_index:
                table.add_row("▶", f"[cyan]{key}[/cyan] [dim]({options[key]})[/dim]")
            else:
                table.add_row(" ", f"[cyan]{key}[/cyan] [dim]({options[key]})[/dim]")

        table.add_row("", "")
        table.add_row("", "[dim]Use ↑/↓ to navigate, Enter to select, Esc to cancel[/dim]")

        return Panel(
            table,
            title=f"[bold]{prompt_text}[/bold]",
            border_style="cyan",
            padding=(1, 2)
        )

    console.print()

    with Live(create_selection_panel(), console=console, transient=True, auto_refresh=False) as live:
        while True:
            try:
                key = get_key()
            except KeyboardInterrupt:
                console.print("\n[yellow]Selection cancelled[/yellow]")
                raise typer.Exit(1)

            if key == 'up':
                selected_index = (selected_index - 1) % len(option_keys)
            elif key == 'down':
                selected_index = (selected_index + 1) % len(option_keys)
            elif key == 'enter':
                selected_key = option_keys[selected_index]
                break
            elif key == 'escape':
                console.print("\n[yellow]Selection cancelled[/yellow]")
                raise typer.Exit(1)

            live.update(create_selection_panel(), refresh=True)

    return selected_key


console = Console()
err_console = Console(stderr=True)


class BannerGroup(TyperGroup):
    """Custom group that shows banner before help."""

    def format_help(self, ctx, formatter):
        # Show banner before help
        show_banner()
        super().format_help(ctx, formatter)


app = typer.Typer(
    name="nodestart",
    help="Generate a lightweight TypeScript Node.js server boilerplate",
    add_completion=False,
    invoke_without_command=True,
    cls=BannerGroup,
)


def show_banner():
    """Display the ASCII art banner."""
    banner_lines = BANNER.strip().split('\n')
    colors = ["bright_green", "green", "cyan", "bright_cyan", "white", "bright_white"]

    styled_banner = Text()
    for i, line in enumerate(banner_lines):
        color = colors[i % len(colors)]
        styled_banner.append(line + "\n", style=color)

    console.print(Align.center(styled_banner))
    console.print(Align.center(Text(TAGLINE, style="italic bright_yellow")))
    console.print()


# ---------------------------------------------------------------------------
# Prompting
# ---------------------------------------------------------------------------


def validate_project_name(name: str) -> str | None:
    """Return an error message for an unusable project name, or None."""
    name = (name or "").strip()
    if not name:
        return "Please enter a project name."
    if name in {".", ".."} or "/" in name or "\\" in name:
        return "Project name must be a single directory name."
    return None


def prompt_project_name() -> str:
    while True:
        try:
            answer = console.input("[bold cyan]?[/bold cyan] [bold]What is your project name?[/bold] ")
        except (KeyboardInterrupt, EOFError):
            console.print("\n[yellow]Cancelled[/yellow]")
            raise typer.Exit(1)
        problem = validate_project_name(answer)
        if problem is None:
            return answer.strip()
        console.print(f"[red]>>[/red] {problem}")


def stdin_is_interactive() -> bool:
    return sys.stdin.isatty()


def choose_option(options: dict, prompt_text: str, default_key: str, explicit: str | None, what: str) -> str:
    """Use an explicit value when given, arrow selection on a TTY, or the default."""
    if explicit:
        if explicit not in options:
            console.print(f"[red]Error:[/red] Invalid {what} '{explicit}'. Choose from: {', '.join(options.keys())}")
            raise typer.Exit(1)
        return explicit
    if stdin_is_interactive():
        return select_with_arrows(options, prompt_text, default_key)
    return default_key


def collect_request(
    settings: GeneratorSettings,
    project_name: str | None = None,
    package_manager: str | None = None,
    framework: str | None = None,
) -> ProjectRequest:
    """Gather name, package manager and framework, in that order."""
    if project_name is not None:
        problem = validate_project_name(project_name)
        if problem:
            console.print(f"[red]Error:[/red] {problem}")
            raise typer.Exit(1)
        name = project_name.strip()
    else:
        name = prompt_project_name()

    selected_pm = choose_option(
        PACKAGE_MANAGER_CHOICES,
        "Choose a package manager:",
        settings.default_package_manager,
        package_manager,
        "package manager",
    )
    selected_framework = choose_option(
        FRAMEWORK_CHOICES,
        "Choose a framework to use:",
        settings.default_framework,
        framework,
        "framework",
    )
    return ProjectRequest(name=name, package_manager=selected_pm, framework=selected_framework)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

EXPRESS_SERVER = f"""import express from 'express';

const app = express();

app.get('/', (req, res) => {{
  res.send('Hello World!');
}});

app.listen({SERVER_PORT}, () => {{
  console.log('Server is running on port {SERVER_PORT}');
}});
"""

# import line and setup lines per companion plugin
FASTIFY_PLUGIN_SNIPPETS = {
    "fastify-type-provider-zod": (
        "import { serializerCompiler, validatorCompiler } from 'fastify-type-provider-zod';",
        "app.setValidatorCompiler(validatorCompiler);\napp.setSerializerCompiler(serializerCompiler);",
    ),
    "@fastify/cors": (
        "import cors from '@fastify/cors';",
        "app.register(cors, { origin: '*' });",
    ),
    "@fastify/swagger": (
        "import swagger from '@fastify/swagger';",
        "app.register(swagger, {\n  openapi: { info: { title: 'API', version: '1.0.0' } },\n});",
    ),
    "@fastify/swagger-ui": (
        "import swaggerUi from '@fastify/swagger-ui';",
        "app.register(swaggerUi, { routePrefix: '/docs' });",
    ),
}


def render_server_source(framework: str, plugins=()) -> str:
    """Return the contents of ``src/server.ts`` for *framework*."""
    if framework == "express":
        return EXPRESS_SERVER
    if framework != "fastify":
        raise ValueError(f"Unsupported framework: {framework}")

    snippets = [FASTIFY_PLUGIN_SNIPPETS[name] for name in FASTIFY_PLUGIN_SNIPPETS if name in plugins]
    imports = "\n".join(["import fastify from 'fastify';"] + [imp for imp, _ in snippets])
    setup = "".join(f"{body}\n\n" for _, body in snippets)
    return f"""{imports}

const app = fastify();

{setup}app.get('/test', () => {{
  return {{ message: 'Hello World' }};
}});

app.listen({{
  port: {SERVER_PORT},
}}).then(() => {{
  console.log('Server is running on port {SERVER_PORT}');
}});
"""


def render_test_stub(framework: str) -> str:
    route = "/" if framework == "express" else "/test"
    return f"""import {{ describe, it }} from 'vitest';

// Test file for the server
// Implement your tests here
describe('server', () => {{
  it.todo('responds on {route}');
}});
"""


# ---------------------------------------------------------------------------
# Config files
# ---------------------------------------------------------------------------


def _dump_json(data: dict) -> str:
    return json.dumps(data, indent=2) + "\n"


def render_eslint_config() -> str:
    return _dump_json({
        "root": True,
        "env": {"node": True, "es2022": True},
        "parser": "@typescript-eslint/parser",
        "parserOptions": {
            "project": "./tsconfig.json",
            "ecmaVersion": 2022,
            "sourceType": "module",
        },
        "plugins": ["@typescript-eslint"],
        "extends": [
            "eslint:recommended",
            "plugin:@typescript-eslint/recommended",
            "prettier",
        ],
        "rules": {"@typescript-eslint/no-unused-vars": "error"},
    })


def render_prettier_config(rules: dict | None = None) -> str:
    return _dump_json(dict(DEFAULT_PRETTIER_RULES if rules is None else rules))


def render_tsconfig() -> str:
    return _dump_json({
        "compilerOptions": {
            "target": "ES2022",
            "module": "NodeNext",
            "moduleResolution": "NodeNext",
            "strict": True,
            "esModuleInterop": True,
            "skipLibCheck": True,
            "outDir": "dist",
            "rootDir": "src",
        },
        "include": ["src"],
    })


def render_pre_commit_hook(package_manager: str) -> str:
    return f"""#!/usr/bin/env sh

{EXEC_PREFIXES[package_manager]} lint-staged
"""


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def dependency_plan(framework: str, settings: GeneratorSettings) -> tuple[dict, dict]:
    """Return the pinned ``(dependencies, devDependencies)`` for *framework*."""
    if framework not in FRAMEWORK_DEPENDENCIES:
        raise ValueError(f"Unsupported framework: {framework}")
    extra = FRAMEWORK_DEPENDENCIES[framework]
    dependencies = dict(extra["dependencies"])
    dependencies.update(settings.framework_plugins.get(framework, {}))
    dev_dependencies = dict(BASE_DEV_DEPENDENCIES)
    dev_dependencies.update(extra["devDependencies"])
    return dependencies, dev_dependencies


def _pick_versions(pinned: dict, resolved: dict) -> dict:
    return {name: (resolved.get(name) or pinned[name]) for name in sorted(pinned)}


def build_manifest(request: ProjectRequest, dependencies: dict, dev_dependencies: dict, resolved: dict | None = None) -> dict:
    """Assemble ``package.json`` content.

    Resolved versions win over pinned ones; any package missing from
    *resolved* (or resolved to an empty string) keeps its pinned default.
    """
    resolved = resolved or {}
    runner = EXEC_PREFIXES[request.package_manager]
    return {
        "name": request.name,
        "version": INITIAL_VERSION,
        "description": "",
        "main": "dist/server.js",
        "scripts": {
            "start": "tsx src/server.ts",
            "build": "tsup src",
            "start:dev": "tsx watch src/server.ts",
            "husky:prepare": f"{runner} husky",
            "test": "vitest",
            "test:lint": "vitest run",
        },
        "husky": {
            "hooks": {
                "pre-commit": "lint-staged",
            },
        },
        "lint-staged": {
            "*.{js,jsx,ts,tsx}": [
                f"{runner} eslint --fix",
                f"{runner} prettier --write",
                f"{runner} vitest related --run --passWithNoTests",
            ],
        },
        "keywords": [],
        "author": "",
        "license": "ISC",
        "dependencies": _pick_versions(dependencies, resolved),
        "devDependencies": _pick_versions(dev_dependencies, resolved),
    }


def collect_artifacts(request: ProjectRequest, settings: GeneratorSettings, manifest: dict) -> list[FileArtifact]:
    """Every file written for *request*, in write order."""
    plugins = settings.framework_plugins.get(request.framework, {})
    artifacts = [
        FileArtifact(Path("src") / "server.ts", render_server_source(request.framework, plugins)),
        FileArtifact(Path("src") / "server.test.ts", render_test_stub(request.framework)),
        FileArtifact(Path(".husky") / "pre-commit", render_pre_commit_hook(request.package_manager), executable=True),
    ]
    if "eslint" in settings.config_files:
        artifacts.append(FileArtifact(Path(".eslintrc.json"), render_eslint_config()))
    if "prettier" in settings.config_files:
        artifacts.append(FileArtifact(Path(".prettierrc.json"), render_prettier_config(settings.prettier)))
    if "tsconfig" in settings.config_files:
        artifacts.append(FileArtifact(Path("tsconfig.json"), render_tsconfig()))
    artifacts.append(FileArtifact(Path("package.json"), _dump_json(manifest)))
    return artifacts


# ---------------------------------------------------------------------------
# Version resolution
# ---------------------------------------------------------------------------


def version_query_command(package_name: str, package_manager: str) -> list[str]:
    if package_manager == "yarn":
        return ["yarn", "info", package_name, "version", "--silent"]
    return [package_manager, "show", package_name, "version"]


def query_package_manager_version(package_name: str, package_manager: str) -> str:
    result = subprocess.run(
        version_query_command(package_name, package_manager),
        check=True,
        capture_output=True,
        text=True,
    )
    version = result.stdout.strip()
    if not version:
        raise ValueError("empty version output")
    return version


def query_registry_version(package_name: str, client: httpx.Client, registry_url: str = DEFAULT_REGISTRY_URL) -> str:
    url = f"{registry_url.rstrip('/')}/{package_name.replace('/', '%2F')}/latest"
    response = client.get(url, timeout=30, follow_redirects=True)
    if response.status_code != 200:
        raise RuntimeError(f"Registry returned {response.status_code} for {url}")
    try:
        payload = response.json()
    except ValueError as je:
        raise RuntimeError(f"Failed to parse registry JSON: {je}")
    if not isinstance(payload, dict):
        raise RuntimeError(f"Registry returned {type(payload).__name__} instead of an object for {url}")
    version = str(payload.get("version") or "").strip()
    if not version:
        raise ValueError("registry response has no version")
    return version


def resolve_latest_versions(
    packages: list[str],
    package_manager: str,
    *,
    settings: GeneratorSettings | None = None,
    client: httpx.Client | None = None,
) -> dict:
    """Look up the latest version of each package.

    Packages whose lookup fails are reported on stderr and left out of the
    result, so callers fall back to their pinned defaults.
    """
    settings = settings or GeneratorSettings()
    owns_client = settings.version_source == "registry" and client is None
    if owns_client:
        client = httpx.Client(verify=ssl_context)

    def lookup(package_name: str):
        try:
            if settings.version_source == "registry":
                return query_registry_version(package_name, client, settings.registry_url), None
            return query_package_manager_version(package_name, package_manager), None
        except (subprocess.CalledProcessError, OSError, httpx.HTTPError, RuntimeError, ValueError) as e:
            return None, e

    try:
        if settings.resolver_workers > 1:
            with ThreadPoolExecutor(max_workers=settings.resolver_workers) as pool:
                outcomes = list(pool.map(lookup, packages))
        else:
            outcomes = [lookup(name) for name in packages]
    finally:
        if owns_client:
            client.close()

    versions = {}
    for package_name, (version, error) in zip(packages, outcomes):
        if error is not None:
            err_console.print(f"[yellow]Error fetching latest version for {package_name}:[/yellow] {_describe_error(error)}")
            continue
        versions[package_name] = version
    return versions


def _describe_error(error: Exception) -> str:
    if isinstance(error, subprocess.CalledProcessError):
        stderr = (error.stderr or "").strip()
        return f"exit code {error.returncode}" + (f": {stderr.splitlines()[-1]}" if stderr else "")
    return str(error)


# ---------------------------------------------------------------------------
# Writing the project
# ---------------------------------------------------------------------------


def materialize_project(project_path: Path, artifacts: list[FileArtifact]) -> list[Path]:
    """Write *artifacts* under *project_path*.

    Directories are created when missing; existing files are truncated.
    OSError from any write propagates and nothing already written is undone.
    """
    root = project_path.resolve()
    for directory in (root, root / "src", root / ".husky"):
        directory.mkdir(parents=True, exist_ok=True)

    written = []
    for artifact in artifacts:
        target = (root / artifact.relative_path).resolve()
        if not target.is_relative_to(root):
            raise ValueError(f"{artifact.relative_path} escapes {root}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(artifact.content, encoding="utf-8")
        if artifact.executable and os.name != "nt":
            os.chmod(target, 0o755)
        written.append(target)
    return written


# ---------------------------------------------------------------------------
# Install / update
# ---------------------------------------------------------------------------


def run_command(cmd: list[str], check_return: bool = True, capture: bool = False, cwd: Path | None = None) -> Optional[str]:
    """Run a command and optionally capture output."""
    try:
        if capture:
            result = subprocess.run(cmd, check=check_return, capture_output=True, text=True, cwd=cwd)
            return result.stdout.strip()
        else:
            subprocess.run(cmd, check=check_return, cwd=cwd)
            return None
    except subprocess.CalledProcessError as e:
        if check_return:
            err_console.print(f"[red]Error running command:[/red] {' '.join(cmd)}")
            err_console.print(f"[red]Exit code:[/red] {e.returncode}")
            if hasattr(e, 'stderr') and e.stderr:
                err_console.print(f"[red]Error output:[/red] {e.stderr}")
            raise
        return None


def install_dependencies(project_path: Path, package_manager: str) -> None:
    run_command([package_manager, "install"], capture=True, cwd=project_path)


def update_dependencies(project_path: Path, package_manager: str) -> None:
    run_command(UPDATE_COMMANDS[package_manager], capture=True, cwd=project_path)


def parse_outdated_table(text: str) -> list[OutdatedPackage]:
    """Parse the human readable ``outdated`` table (header line first)."""
    packages = []
    for line in text.splitlines()[1:]:
        columns = line.split()
        if not columns:
            continue
        columns += [""] * (5 - len(columns))
        packages.append(OutdatedPackage(*columns[:5]))
    return packages


def _outdated_from_mapping(data: dict) -> list[OutdatedPackage]:
    packages = []
    for name, info in data.items():
        # npm lists one entry per location for workspaces
        entries = info if isinstance(info, list) else [info]
        for entry in entries:
            packages.append(OutdatedPackage(
                name=name,
                current=str(entry.get("current", "") or ""),
                wanted=str(entry.get("wanted", "") or ""),
                latest=str(entry.get("latest", "") or ""),
                location=str(entry.get("location") or entry.get("dependencyType") or ""),
            ))
    return packages


def _outdated_from_yarn_lines(lines: list[str]) -> list[OutdatedPackage]:
    packages = []
    for line in lines:
        record = json.loads(line)
        if not isinstance(record, dict) or record.get("type") != "table":
            continue
        for row in record.get("data", {}).get("body", []):
            columns = [str(c) for c in row] + [""] * 5
            packages.append(OutdatedPackage(*columns[:5]))
    return packages


def parse_outdated_output(text: str) -> list[OutdatedPackage]:
    """Parse ``outdated`` output from any supported package manager.

    JSON object (npm, pnpm), JSON lines (yarn), otherwise the plain table.
    """
    text = text.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if isinstance(data, dict):
        if data.get("type") == "table":
            return _outdated_from_yarn_lines([text])
        return _outdated_from_mapping(data)
    lines = [line for line in text.splitlines() if line.strip()]
    try:
        return _outdated_from_yarn_lines(lines)
    except ValueError:
        return parse_outdated_table(text)


def find_outdated(project_path: Path, package_manager: str) -> list[OutdatedPackage]:
    cmd = OUTDATED_COMMANDS[package_manager]
    result = subprocess.run(cmd, capture_output=True, text=True, cwd=project_path)
    # npm and yarn exit 1 when something is outdated
    if result.returncode != 0 and not result.stdout.strip():
        raise subprocess.CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
    return parse_outdated_output(result.stdout)


def run_installer(project_path: Path, package_manager: str, settings: GeneratorSettings, tracker: StepTracker) -> bool:
    """Install, then update outdated packages. Returns False if install or update failed."""
    tracker.start("install", f"{package_manager} install")
    try:
        install_dependencies(project_path, package_manager)
    except (subprocess.CalledProcessError, OSError) as e:
        tracker.error("install", _describe_error(e))
        tracker.skip("outdated", "install failed")
        tracker.skip("update", "install failed")
        return False
    tracker.complete("install", "dependencies installed")

    if not settings.update_outdated:
        tracker.skip("outdated", "disabled")
        tracker.skip("update", "disabled")
        return True

    tracker.start("outdated")
    try:
        outdated = find_outdated(project_path, package_manager)
    except (subprocess.CalledProcessError, OSError) as e:
        tracker.error("outdated", _describe_error(e))
        tracker.skip("update", "outdated check failed")
        return True

    if not outdated:
        tracker.complete("outdated", "all dependencies are up to date")
        tracker.skip("update", "nothing to update")
        return True

    tracker.complete("outdated", f"{len(outdated)} outdated")
    tracker.start("update", f"{package_manager} update")
    try:
        update_dependencies(project_path, package_manager)
    except (subprocess.CalledProcessError, OSError) as e:
        tracker.error("update", _describe_error(e))
        return False
    tracker.complete("update", "dependencies updated")
    return True


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _load_settings_or_exit() -> GeneratorSettings:
    try:
        return load_settings()
    except ConfigError as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def run_init(
    project_name: str | None = None,
    package_manager: str | None = None,
    framework: str | None = None,
    *,
    no_resolve: bool = False,
    no_install: bool = False,
    no_update: bool = False,
    workers: int | None = None,
    registry: bool = False,
    skip_tls: bool = False,
    debug: bool = False,
) -> Path:
    """The whole generation flow shared by ``init`` and the bare command."""
    show_banner()

    settings = _load_settings_or_exit()
    overrides = {}
    if no_resolve:
        overrides["resolve_versions"] = False
    if no_install:
        overrides["auto_install"] = False
    if no_update:
        overrides["update_outdated"] = False
    if workers is not None:
        overrides["resolver_workers"] = workers
    if registry:
        overrides["version_source"] = "registry"
    try:
        settings = with_overrides(settings, **overrides)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    request = collect_request(settings, project_name, package_manager, framework)
    project_path = Path.cwd() / request.name

    setup_lines = [
        "[cyan]Nodestart Project Setup[/cyan]",
        "",
        f"{'Project':<17} [green]{request.name}[/green]",
        f"{'Package Manager':<17} [yellow]{request.package_manager}[/yellow]",
        f"{'Framework':<17} [yellow]{request.framework}[/yellow]",
        f"{'Target Path':<17} [dim]{project_path}[/dim]",
    ]
    console.print(Panel("\n".join(setup_lines), border_style="cyan", padding=(1, 2)))
    if project_path.exists():
        console.print(f"[yellow]Directory '{request.name}' already exists; generated files will be overwritten.[/yellow]")

    tracker = StepTracker("Create Node.js Project")
    tracker.add("select", "Collect project answers")
    tracker.complete("select", f"{request.package_manager}, {request.framework}")
    for key, label in [
        ("plan", "Plan dependencies"),
        ("resolve", "Resolve latest versions"),
        ("write", "Write project files"),
        ("install", "Install dependencies"),
        ("outdated", "Check outdated dependencies"),
        ("update", "Update dependencies"),
        ("final", "Finalize"),
    ]:
        tracker.add(key, label)

    install_ok = True
    with Live(tracker.render(), console=console, refresh_per_second=8, transient=True) as live:
        tracker.attach_refresh(lambda: live.update(tracker.render()))

        tracker.start("plan")
        dependencies, dev_dependencies = dependency_plan(request.framework, settings)
        tracker.complete("plan", f"{len(dependencies)} runtime, {len(dev_dependencies)} dev")

        resolved = {}
        if settings.resolve_versions:
            packages = [name for name in [*dependencies, *dev_dependencies] if name not in settings.pinned_packages]
            tracker.start("resolve", f"{len(packages)} packages via {settings.version_source}")
            client = None
            if settings.version_source == "registry":
                client = httpx.Client(verify=ssl_context if not skip_tls else False)
            try:
                resolved = resolve_latest_versions(packages, request.package_manager, settings=settings, client=client)
            finally:
                if client is not None:
                    client.close()
            missing = len(packages) - len(resolved)
            detail = f"{len(resolved)} resolved" + (f", {missing} pinned" if missing else "")
            tracker.complete("resolve", detail)
        else:
            tracker.skip("resolve", "using pinned versions")

        manifest = build_manifest(request, dependencies, dev_dependencies, resolved)
        artifacts = collect_artifacts(request, settings, manifest)

        tracker.start("write")
        try:
            materialize_project(project_path, artifacts)
        except (OSError, ValueError) as e:
            tracker.error("write", str(e))
            tracker.error("final", "materialization failed")
            live.stop()
            console.print(tracker.render())
            console.print(Panel(f"Could not write project files: {e}", title="Materialization Error", border_style="red"))
            if debug:
                _env_pairs = [
                    ("Python", sys.version.split()[0]),
                    ("Platform", sys.platform),
                    ("CWD", str(Path.cwd())),
                    ("Config", str(settings_path())),
                ]
                _label_width = max(len(k) for k, _ in _env_pairs)
                env_lines = [f"{k.ljust(_label_width)} → [bright_black]{v}[/bright_black]" for k, v in _env_pairs]
                console.print(Panel("\n".join(env_lines), title="Debug Environment", border_style="magenta"))
            raise typer.Exit(1)
        tracker.complete("write", f"{len(artifacts)} files")

        if settings.auto_install:
            install_ok = run_installer(project_path, request.package_manager, settings, tracker)
        else:
            for key in ("install", "outdated", "update"):
                tracker.skip(key, "auto install disabled")

        if install_ok:
            tracker.complete("final", "project ready")
        else:
            tracker.error("final", "files written, package manager step failed")

    # Final static tree (ensures finished state visible after Live context ends)
    console.print(tracker.render())
    console.print(f"\n[bold green]Project {request.name} created successfully![/bold green]")

    pm = request.package_manager
    steps_lines = [f"1. Go to the project folder: [cyan]cd {request.name}[/cyan]"]
    if tracker.status_of("install") != "done":
        steps_lines.append(f"2. Install the dependencies: [cyan]{pm} install[/cyan]")
    else:
        steps_lines.append(f"2. Keep dependencies fresh: [cyan]{pm} update[/cyan]")
    steps_lines.append(f"3. Start the dev server: [cyan]{pm} run start:dev[/cyan] (port {SERVER_PORT})")
    steps_lines.append(f"4. Enable the pre-commit hook: [cyan]{pm} run husky:prepare[/cyan]")
    console.print()
    console.print(Panel("\n".join(steps_lines), title="Next Steps", border_style="cyan", padding=(1, 2)))

    if not install_ok:
        err_console.print(f"[red]{pm} could not install or update dependencies.[/red] Project files were kept.")
        raise typer.Exit(2)
    return project_path


@app.callback()
def callback(ctx: typer.Context):
    """Run the interactive generator when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        run_init()


@app.command()
def init(
    project_name: str = typer.Argument(None, help="Name for your new project directory (prompted when omitted)"),
    package_manager: str = typer.Option(None, "--package-manager", "-p", help="Package manager to use: npm, yarn or pnpm"),
    framework: str = typer.Option(None, "--framework", "-f", help="Framework to use: express or fastify"),
    no_resolve: bool = typer.Option(False, "--no-resolve", help="Use pinned dependency versions instead of querying the latest ones"),
    no_install: bool = typer.Option(False, "--no-install", help="Skip installing dependencies"),
    no_update: bool = typer.Option(False, "--no-update", help="Skip checking for and updating outdated dependencies"),
    workers: int = typer.Option(None, "--workers", help="Number of concurrent version lookups"),
    registry: bool = typer.Option(False, "--registry", help="Query the npm registry over HTTPS instead of the package manager"),
    skip_tls: bool = typer.Option(False, "--skip-tls", help="Skip SSL/TLS verification for registry lookups (not recommended)"),
    debug: bool = typer.Option(False, "--debug", help="Show diagnostic output on failure"),
):
    """
    Create a new TypeScript Node.js project.

    This command will:
    1. Ask for the project name, package manager and framework
    2. Resolve the latest version of every dependency (pinned fallbacks on failure)
    3. Write the server, test stub, lint/format/compiler configs, pre-commit hook and package.json
    4. Install dependencies and update outdated ones

    Examples:
        nodestart init my-api
        nodestart init my-api -p npm -f express
        nodestart init my-api --no-install
        nodestart init my-api --registry --workers 4
    """
    run_init(
        project_name,
        package_manager,
        framework,
        no_resolve=no_resolve,
        no_install=no_install,
        no_update=no_update,
        workers=workers,
        registry=registry,
        skip_tls=skip_tls,
        debug=debug,
    )


@app.command()
def check():
    """Check which package managers and tools are installed."""
    show_banner()
    console.print("[bold]Checking for installed tools...[/bold]\n")

    tracker = StepTracker("Check Available Tools")
    tools = {
        "node": "Node.js runtime",
        "npm": "npm package manager",
        "yarn": "Yarn package manager",
        "pnpm": "pnpm package manager",
        "git": "Git version control",
    }
    for tool, label in tools.items():
        tracker.add(tool, label)

    available = {}
    for tool in tools:
        if shutil.which(tool):
            tracker.complete(tool, "available")
            available[tool] = True
        else:
            tracker.error(tool, "not found")
            available[tool] = False

    console.print(tracker.render())

    if not available["node"]:
        console.print("\n[dim]Tip: Install Node.js from https://nodejs.org to run generated projects[/dim]")
    if not any(available[pm] for pm in PACKAGE_MANAGER_CHOICES):
        console.print("[dim]Tip: Without a package manager, use --no-resolve --no-install[/dim]")
    if not available["git"]:
        console.print("[dim]Tip: Install git so the pre-commit hook can run[/dim]")


@app.command()
def config(
    path_only: bool = typer.Option(False, "--path", help="Only print the config file location"),
):
    """Show the effective generator settings."""
    location = settings_path()
    if path_only:
        console.print(str(location), soft_wrap=True)
        return

    settings = _load_settings_or_exit()
    table = Table.grid(padding=(0, 2))
    table.add_column(justify="left", style="yellow")
    table.add_column(justify="left", style="white")
    for key, value in settings.model_dump().items():
        if isinstance(value, (dict, list, tuple)):
            value = json.dumps(value)
        table.add_row(key, str(value))
    source = "file" if location.is_file() else "defaults"
    console.print(Panel(table, title=f"Settings ({source})", subtitle=str(location), border_style="cyan", padding=(1, 2)))


def main():
    app()


if __name__ == "__main__":
    main()
