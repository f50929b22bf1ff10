# Copyright (c) Syntropy Systems
"""Policy sources: YAML unit declarations turned into immutable Units."""
from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, ValidationError, field_validator

from settle.config import SettleConfig
from settle.errors import PolicyError
from settle.models.base import StrictModel
from settle.mutators import (
    BootTargetMutator,
    CommandMutator,
    FileMutator,
    ModeMutator,
    PackageMutator,
    RemountMutator,
    ServiceMutator,
    UserMutator,
)
from settle.policy import Policy
from settle.probes import (
    BootTargetProbe,
    DiskSpaceProbe,
    FileProbe,
    ModeProbe,
    MountOptionProbe,
    OsReleaseProbe,
    PackageSetProbe,
    PathExistsProbe,
    ServiceProbe,
    UserProbe,
)
from settle.sequencer import plan_phases
from settle.units import Default, Unit

CATALOG_PACKAGE = "settle.catalogs"
DISABLED_STATES = ("disabled", "masked", "not-found", "static", "indirect")

UnitKind = Literal[
    "packages",
    "service",
    "file",
    "mount",
    "boot_target",
    "user",
    "command",
    "permissions",
    "disk_space",
    "os_release",
]


class UnitSpec(StrictModel):
    """One unit as written in a policy file.

    Only the fields relevant to ``kind`` are read; the rest keep defaults.
    """

    id: str = Field(min_length=1)
    kind: UnitKind
    phase: int = 0
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    destructive: bool = False
    requires_confirmation: bool = False
    default: Literal["preserve", "apply"] = "apply"
    precondition: bool = False
    long_running: bool = False

    # packages
    packages: list[str] = Field(default_factory=list)
    state: Literal["present", "absent"] = "present"
    protect: list[str] = Field(default_factory=list)
    autoremove: bool = False

    # service
    service: Optional[str] = None
    enabled: bool = True

    # file
    path: Optional[str] = None
    content: Optional[str] = None
    mode: int = 0o644
    validate_cmd: list[str] = Field(default_factory=list, alias="validate")
    reload: list[str] = Field(default_factory=list)

    # mount
    mountpoint: Optional[str] = None
    options: list[str] = Field(default_factory=list)
    fstab_entry: Optional[str] = None

    # boot_target
    target: Optional[str] = None

    # user
    name: Optional[str] = None
    home_mode: int = 0o700

    # command
    command: list[str] = Field(default_factory=list)
    creates: Optional[str] = None
    timeout: Optional[float] = None
    monitor_path: Optional[str] = None

    # permissions: {user} in a path is the configured service account
    modes: dict[str, int] = Field(default_factory=dict)
    create: list[str] = Field(default_factory=list)
    owner: Optional[str] = None

    # disk_space / os_release
    min_mb: Optional[int] = None
    accept: list[str] = Field(default_factory=list)

    @field_validator("mode", "home_mode", mode="before")
    @classmethod
    def _parse_octal(cls, value: object) -> object:
        # Quoted modes ("0644") are octal strings
        if isinstance(value, str):
            return int(value, 8)
        return value

    @field_validator("modes", mode="before")
    @classmethod
    def _parse_octal_modes(cls, value: object) -> object:
        if isinstance(value, dict):
            return {k: int(v, 8) if isinstance(v, str) else v for k, v in value.items()}
        return value


class PolicyFile(StrictModel):
    """A policy source: a named, ordered list of units."""

    name: str
    description: str = ""
    units: list[UnitSpec] = Field(default_factory=list)


@dataclass(frozen=True)
class PolicySet:
    """Loaded policy: immutable units ready for a run."""

    name: str
    description: str
    units: tuple[Unit, ...]

    def unit(self, unit_id: str) -> Unit | None:
        return next((u for u in self.units if u.id == unit_id), None)


def builtin_catalogs() -> list[str]:
    """Names of the catalogs shipped with settle."""
    root = resources.files(CATALOG_PACKAGE)
    return sorted(
        entry.name.removesuffix(".yaml")
        for entry in root.iterdir()
        if entry.name.endswith(".yaml")
    )


def _read_source(source: str) -> str:
    if source in builtin_catalogs():
        return resources.files(CATALOG_PACKAGE).joinpath(f"{source}.yaml").read_text()
    path = Path(source)
    if not path.is_file():
        known = ", ".join(builtin_catalogs())
        msg = f"Policy {source!r} is neither a file nor a built-in catalog ({known})"
        raise PolicyError(msg)
    return path.read_text()


def load_policy(
    source: str,
    config: SettleConfig | None = None,
    logs_dir: Path | None = None,
) -> PolicySet:
    """Load and validate a policy from a built-in catalog name or a YAML path."""
    config = config or SettleConfig()
    try:
        data = yaml.safe_load(_read_source(source))
    except yaml.YAMLError as e:
        msg = f"Policy {source!r} is not valid YAML: {e}"
        raise PolicyError(msg) from e
    return build_policy(data, config, logs_dir or Path("/var/log"))


def build_policy(data: object, config: SettleConfig, logs_dir: Path) -> PolicySet:
    """Validate parsed YAML and build units from it."""
    try:
        document = PolicyFile.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid policy: {e}"
        raise PolicyError(msg) from e

    units = tuple(_build_unit(spec, config, logs_dir) for spec in document.units)
    _ = plan_phases(units)
    return PolicySet(name=document.name, description=document.description, units=units)


def _require(spec: UnitSpec, **values: object) -> None:
    missing = [key for key, value in values.items() if value in (None, "", [], {})]
    if missing:
        msg = f"Unit {spec.id} ({spec.kind}) is missing: {', '.join(missing)}"
        raise PolicyError(msg)


def _build_unit(spec: UnitSpec, config: SettleConfig, logs_dir: Path) -> Unit:  # noqa: PLR0911
    common = {
        "id": spec.id,
        "phase": spec.phase,
        "description": spec.description,
        "depends_on": frozenset(spec.depends_on),
        "destructive": spec.destructive,
        "requires_confirmation": spec.requires_confirmation,
        "default": Default(spec.default),
        "precondition": spec.precondition,
        "long_running": spec.long_running,
    }
    timeout = float(config.command_timeout)

    if spec.kind == "packages":
        _require(spec, packages=spec.packages)
        packages = tuple(spec.packages)
        overlap = set(packages) & set(spec.protect)
        if overlap:
            msg = f"Unit {spec.id} lists protected packages: {', '.join(sorted(overlap))}"
            raise PolicyError(msg)
        remove = spec.state == "absent"
        return Unit(
            probe=PackageSetProbe(packages),
            policy=Policy.absent(*packages) if remove else Policy.present(*packages),
            mutator=PackageMutator(
                packages, remove=remove, protect=tuple(spec.protect), autoremove=spec.autoremove, timeout=timeout
            ),
            **common,
        )

    if spec.kind == "service":
        _require(spec, service=spec.service)
        service = spec.service or ""
        return Unit(
            probe=ServiceProbe(service),
            policy=Policy.value("enabled") if spec.enabled else Policy.one_of(*DISABLED_STATES),
            mutator=ServiceMutator(service, enable=spec.enabled, timeout=timeout),
            **common,
        )

    if spec.kind == "file":
        _require(spec, path=spec.path, content=spec.content)
        path = spec.path or ""
        return Unit(
            probe=FileProbe(path),
            policy=Policy.content(spec.content or ""),
            mutator=FileMutator(
                path, mode=spec.mode, validate=tuple(spec.validate_cmd), reload=tuple(spec.reload), timeout=timeout
            ),
            tracks_content=True,
            backup_paths=(path,),
            **common,
        )

    if spec.kind == "mount":
        _require(spec, mountpoint=spec.mountpoint, options=spec.options, fstab_entry=spec.fstab_entry)
        mountpoint = spec.mountpoint or ""
        mutator = RemountMutator(mountpoint, tuple(spec.options), spec.fstab_entry or "", timeout=timeout)
        return Unit(
            probe=MountOptionProbe(mountpoint),
            policy=Policy.present(*spec.options),
            mutator=mutator,
            backup_paths=(mutator.fstab_path,),
            **common,
        )

    if spec.kind == "boot_target":
        _require(spec, target=spec.target)
        return Unit(
            probe=BootTargetProbe(),
            policy=Policy.value(spec.target or ""),
            mutator=BootTargetMutator(spec.target or "", timeout=timeout),
            **common,
        )

    if spec.kind == "user":
        name = spec.name or config.user
        return Unit(
            probe=UserProbe(name, home_mode=spec.home_mode),
            policy=Policy.value(name),
            mutator=UserMutator(name, home_mode=spec.home_mode, timeout=timeout),
            **common,
        )

    if spec.kind == "command":
        _require(spec, command=spec.command, creates=spec.creates)
        mutator = CommandMutator(
            argv=tuple(spec.command),
            log_path=str(logs_dir / f"{spec.id}.log"),
            poll_interval=config.poll_interval,
            timeout=spec.timeout,
            kill_grace_period=float(config.kill_grace_period),
            monitor_path=spec.monitor_path,
        )
        return Unit(
            probe=PathExistsProbe(spec.creates or ""),
            policy=Policy.present(),
            mutator=mutator,
            **common,
        )

    if spec.kind == "permissions":
        _require(spec, modes=spec.modes)
        modes = tuple((path.format(user=config.user), mode) for path, mode in spec.modes.items())
        create = frozenset(path.format(user=config.user) for path in spec.create)
        unknown = create - {path for path, _ in modes}
        if unknown:
            msg = f"Unit {spec.id} creates paths without a mode: {', '.join(sorted(unknown))}"
            raise PolicyError(msg)
        owner = spec.owner.format(user=config.user) if spec.owner else None
        return Unit(
            probe=ModeProbe(modes, create),
            policy=Policy.absent(),
            mutator=ModeMutator(modes, create, owner),
            **common,
        )

    common["precondition"] = True
    if spec.kind == "disk_space":
        return Unit(
            probe=DiskSpaceProbe(spec.path or "/"),
            policy=Policy.at_least(spec.min_mb if spec.min_mb is not None else config.min_free_mb),
            **common,
        )

    _require(spec, accept=spec.accept)
    return Unit(
        probe=OsReleaseProbe(spec.path or "/etc/os-release"),
        policy=Policy.one_of(*spec.accept),
        **common,
    )
