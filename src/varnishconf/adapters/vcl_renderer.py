import asyncio
import logging
import re
from pathlib import Path

from jinja2 import Environment, StrictUndefined, TemplateError

from varnishconf.domain.errors import ConfigError
from varnishconf.domain.resolved_config import Acl, Cluster, Probe, ResolvedConfig

logger = logging.getLogger(__name__)

_ACL_ENTRY = re.compile(r"^(!\s*)?([^/]*)([^;]*);?(.*)$")
_VSTR_TOKEN = re.compile(r'(")|{{([^}]+)}}')


def acl_entry(entry: str) -> str:
    if entry.startswith("#"):
        return entry
    match = _ACL_ENTRY.match(entry)
    negation, address, mask, rest = match.groups()
    return f'{negation or ""}"{address}"{mask};{rest}'


def vstr(value: str) -> str:
    """Turns ``a {{ expr }} b`` into the VCL string expression ``"a " + expr + " b"``."""

    def replace(match: re.Match) -> str:
        if match.group(1):
            return '" + {"""} + "'
        return f'" + {match.group(2).strip()} + "'

    return '"' + _VSTR_TOKEN.sub(replace, value) + '"'


def _assignments(pairs: list[tuple[str, object]], quoted: bool = False) -> list[str]:
    lines = []
    for name, value in pairs:
        if value is None or value == "":
            continue
        lines.append(f'  .{name} = "{value}";' if quoted else f"  .{name} = {value};")
    return lines


def backends(cluster: Cluster) -> str:
    blocks = []
    for backend in cluster.backends:
        lines = [f"backend {backend.name} {{"]
        lines += _assignments(
            [("host", backend.host), ("port", backend.port), ("path", backend.path)], quoted=True
        )
        lines += _assignments(
            [
                ("max_connections", cluster.max_connections),
                ("first_byte_timeout", cluster.first_byte_timeout),
                ("between_bytes_timeout", cluster.between_bytes_timeout),
                ("connect_timeout", cluster.connect_timeout),
                ("probe", cluster.probe),
            ]
        )
        lines.append("}")
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


def probe_block(probe: Probe) -> str:
    lines = [f"probe {probe.name} {{"]
    if probe.request:
        lines.append("  .request =")
        lines += [f'    "{line}"' for line in probe.request]
        lines[-1] += ";"
    elif probe.url:
        lines.append(f'  .url = "{probe.url}";')
    lines += _assignments(
        [
            ("interval", probe.interval),
            ("timeout", probe.timeout),
            ("window", probe.window),
            ("threshold", probe.threshold),
            ("initial", probe.initial),
            ("expected_response", probe.expected_response),
        ]
    )
    lines.append("}")
    return "\n".join(lines)


def acl_block(acl: Acl) -> str:
    lines = [f"acl {acl.name} {{"]
    lines += [f"  {acl_entry(entry)}" for entry in acl.entries]
    lines.append("}")
    return "\n".join(lines)


def director(cluster: Cluster) -> str:
    lines = [f"new {cluster.name} = directors.round_robin();"]
    lines += [f"  {cluster.name}.add_backend({backend.name});" for backend in cluster.backends]
    return "\n".join(lines)


def create_environment() -> Environment:
    env = Environment(
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        autoescape=False,
    )
    env.globals.update(
        backends=backends,
        probe_block=probe_block,
        acl_block=acl_block,
        director=director,
        acl_entry=acl_entry,
        vstr=vstr,
    )
    env.filters["vstr"] = vstr
    return env


class JinjaVclRenderer:
    """Renders every VCL unit template of a config to its destination path."""

    def __init__(self, environment: Environment | None = None) -> None:
        self._env = environment or create_environment()

    def render(self, template_source: str, config: ResolvedConfig) -> str:
        template = self._env.from_string(template_source)
        return template.render(config=config)

    async def write(self, config: ResolvedConfig) -> None:
        await asyncio.to_thread(self._write_all, config)

    def _write_all(self, config: ResolvedConfig) -> None:
        for unit in config.reload.units:
            source = Path(unit.source_path)
            try:
                content = self.render(source.read_text(), config)
            except TemplateError as exc:
                raise ConfigError(f"Failed to render vcl {source}: {exc}") from exc

            dest = Path(unit.dest_path)
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(content)
            logger.debug("Rendered %s -> %s", source, dest)
