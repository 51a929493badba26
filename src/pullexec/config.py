"""Runtime configuration for the worker, the executor, and work sources.

Every setting can come from two layers: a CLI flag and a ``PULLEXEC_*``
environment variable. A non-empty environment variable wins; the flag applies
only when the variable is absent. Settings classes are frozen dataclasses whose
fields are declared with :func:`setting`, so the CLI can expose one option per
field and :func:`load_settings` can populate them.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from pullexec.errors import ConfigurationError

ENV_PREFIX = "PULLEXEC_"
PAYLOAD_ENV_VAR = f"{ENV_PREFIX}PAYLOAD"
_METADATA_KEY = "pullexec_setting"

SettingsT = TypeVar("SettingsT")


@dataclass(frozen=True, slots=True)
class SettingSpec:
    """How one settings field is exposed as env variable and CLI flag."""

    name: str
    env: str
    flag: str
    help: str
    parse: Callable[[str], Any]
    required: bool
    boolean: bool

    @property
    def option_name(self) -> str:
        """Keyword under which the CLI passes the flag value."""

        return self.flag.replace("-", "_")

    def env_var(self, prefix: str = ENV_PREFIX) -> str:
        return f"{prefix}{self.env}"


def setting(  # noqa: PLR0913
    *,
    env: str,
    default: Any = None,
    flag: str | None = None,
    parse: Callable[[str], Any] = str,
    required: bool = False,
    boolean: bool = False,
    help: str = "",  # noqa: A002
) -> Any:
    """Declare a settings field backed by ``PULLEXEC_<env>`` and ``--<flag>``."""

    return field(
        default=default,
        metadata={
            _METADATA_KEY: {
                "env": env,
                "flag": flag or env.lower().replace("_", "-"),
                "parse": parse_bool if boolean else parse,
                "required": required,
                "boolean": boolean,
                "help": help,
            },
        },
    )


def setting_specs(settings_class: type) -> Iterator[SettingSpec]:
    """Yield specs for every field declared with :func:`setting`."""

    for item in dataclasses.fields(settings_class):
        meta = item.metadata.get(_METADATA_KEY)
        if meta is None:
            continue
        yield SettingSpec(name=item.name, **meta)


def load_settings(
    settings_class: type[SettingsT],
    environment: Mapping[str, str],
    flags: Mapping[str, Any],
    *,
    prefix: str = ENV_PREFIX,
) -> SettingsT:
    """Populate ``settings_class`` from environment variables, then flags."""

    values: dict[str, Any] = {}
    for spec in setting_specs(settings_class):
        env_var = spec.env_var(prefix)
        raw: Any = environment.get(env_var)
        origin = env_var
        if raw is None or raw == "":
            raw = flags.get(spec.option_name)
            origin = f"--{spec.flag}"
        if raw is None or raw == "":
            if spec.required:
                raise ConfigurationError(
                    f"Missing required setting: set {env_var} or pass --{spec.flag}.",
                )
            continue
        values[spec.name] = _parse_value(spec, raw, origin)
    return settings_class(**values)


def _parse_value(spec: SettingSpec, raw: Any, origin: str) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return spec.parse(raw)
    except (ValueError, ConfigurationError) as error:
        raise ConfigurationError(f"Invalid value for {origin}: {raw!r} ({error})") from error


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError("expected one of true/false/yes/no/on/off/1/0")


def parse_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(","))


def parse_int_csv(value: str) -> tuple[int, ...]:
    return tuple(int(part) for part in parse_csv(value) if part)


def parse_non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise ValueError("must be >= 0")
    return number


def parse_positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise ValueError("must be > 0")
    return number


def parse_positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise ValueError("must be > 0")
    return number


def parse_headers(value: str) -> dict[str, str]:
    """Parse ``Name:value,Other:value`` into a header mapping."""

    headers: dict[str, str] = {}
    for part in value.split(","):
        name, separator, header_value = part.partition(":")
        if not separator or not name.strip():
            raise ValueError(f"header {part!r} must look like 'Name:value'")
        headers[name.strip()] = header_value.strip()
    return headers


def parse_choice(*choices: str) -> Callable[[str], str]:
    def _parse(value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in choices:
            raise ValueError(f"expected one of {', '.join(choices)}")
        return normalized

    return _parse


@dataclass(frozen=True, slots=True)
class RunSettings:
    """Worker and executor settings shared by every driver."""

    driver: str = setting(
        env="DRIVER",
        default="",
        required=True,
        help="Work source driver name.",
    )
    daemon: bool = setting(
        env="DAEMON",
        default=False,
        boolean=True,
        help="Loop forever instead of processing one item.",
    )
    daemon_interval_seconds: float = setting(
        env="DAEMON_INTERVAL",
        default=0.0,
        parse=parse_non_negative_float,
        help="Pause between daemon iterations, in seconds.",
    )
    max_iterations: int | None = setting(
        env="MAX_ITERATIONS",
        parse=parse_positive_int,
        help="Stop the daemon loop after this many iterations.",
    )
    host_env: bool = setting(
        env="HOSTENV",
        default=False,
        boolean=True,
        help="Pass the host environment to the program.",
    )
    pass_work_as_arg: bool = setting(
        env="PASS_WORK_AS_ARG",
        default=False,
        boolean=True,
        help="Append the payload as the last program argument.",
    )
    pass_work_as_stdin: bool = setting(
        env="PASS_WORK_AS_STDIN",
        default=False,
        boolean=True,
        help="Write the payload to the program's stdin.",
    )
    payload_file: Path | None = setting(
        env="PAYLOAD_FILE",
        parse=Path,
        help="Write the payload to this file before running the program.",
    )
    keep_payload_file: bool = setting(
        env="KEEP_PAYLOAD_FILE",
        default=False,
        boolean=True,
        help="Keep the payload file after the program exits.",
    )
    timeout_seconds: float | None = setting(
        env="TIMEOUT_SECONDS",
        parse=parse_positive_float,
        help="Terminate the program after this many seconds.",
    )
    strict_templates: bool = setting(
        env="STRICT_TEMPLATES",
        default=False,
        boolean=True,
        help="Fail follow-up requests that reference unknown template keys.",
    )

    @classmethod
    def from_sources(
        cls,
        environment: Mapping[str, str],
        flags: Mapping[str, Any],
    ) -> RunSettings:
        """Load run settings with environment variables overriding flags."""

        settings = load_settings(cls, environment, flags)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for invalid combinations."""

        if not self.driver.strip():
            raise ConfigurationError("PULLEXEC_DRIVER must not be empty.")
        if self.keep_payload_file and self.payload_file is None:
            raise ConfigurationError(
                "PULLEXEC_KEEP_PAYLOAD_FILE requires PULLEXEC_PAYLOAD_FILE.",
            )
