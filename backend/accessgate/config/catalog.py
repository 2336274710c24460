"""
Catalog loader - load the authorization catalog from config/catalog.yml.

Provides:
- PermissionSpec / FeatureSpec / PlanSpec / RoleTemplate: typed catalog entries
- SeparationOfDutiesPair: maker/checker permission pair
- Catalog: the validated catalog
- CatalogLoader: thread-safe loader with reload support

The catalog is the source of truth for what gets seeded; at runtime the
engine reads the seeded database rows, never this file directly. The one
exception is separation_of_duties, which is policy rather than data.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class CatalogError(ValueError):
    """Catalog file is missing or inconsistent."""


@dataclass(frozen=True)
class PermissionSpec:
    name: str
    category: str
    description: Optional[str] = None


@dataclass(frozen=True)
class FeatureSpec:
    name: str
    category: str
    tier: str
    description: Optional[str] = None


@dataclass(frozen=True)
class PlanSpec:
    name: str
    display_name: str
    tier: int
    features: tuple[str, ...] = ()


@dataclass(frozen=True)
class RoleTemplate:
    slug: str
    name: str
    description: Optional[str]
    is_delegatable: bool
    permissions: tuple[str, ...] = ()


@dataclass(frozen=True)
class SeparationOfDutiesPair:
    maker: str
    checker: str


@dataclass
class Catalog:
    """Validated authorization catalog."""

    permissions: Dict[str, PermissionSpec] = field(default_factory=dict)
    features: Dict[str, FeatureSpec] = field(default_factory=dict)
    feature_permissions: Dict[str, tuple[str, ...]] = field(default_factory=dict)
    plans: Dict[str, PlanSpec] = field(default_factory=dict)
    system_roles: Dict[str, RoleTemplate] = field(default_factory=dict)
    role_templates: Dict[str, RoleTemplate] = field(default_factory=dict)
    separation_of_duties: List[SeparationOfDutiesPair] = field(default_factory=list)

    def checker_permissions(self) -> Dict[str, str]:
        """Map checker permission -> maker permission."""
        return {pair.checker: pair.maker for pair in self.separation_of_duties}

    def sod_conflicts(self, permission_names: set[str]) -> List[SeparationOfDutiesPair]:
        """Return every maker/checker pair fully contained in permission_names."""
        return [
            pair for pair in self.separation_of_duties
            if pair.maker in permission_names and pair.checker in permission_names
        ]

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Catalog":
        """Build and cross-validate a catalog from parsed YAML."""
        catalog = cls()

        for entry in raw.get("permissions") or []:
            spec = PermissionSpec(
                name=entry["name"],
                category=entry.get("category", "general"),
                description=entry.get("description"),
            )
            catalog.permissions[spec.name] = spec

        for entry in raw.get("features") or []:
            spec = FeatureSpec(
                name=entry["name"],
                category=entry.get("category", "general"),
                tier=str(entry.get("tier", "")),
                description=entry.get("description"),
            )
            catalog.features[spec.name] = spec

        for feature_name, permission_names in (raw.get("feature_permissions") or {}).items():
            catalog.feature_permissions[feature_name] = tuple(permission_names or [])

        for plan_name, plan in (raw.get("plans") or {}).items():
            catalog.plans[plan_name] = PlanSpec(
                name=plan_name,
                display_name=plan.get("display_name", plan_name.title()),
                tier=int(plan.get("tier", 0)),
                features=tuple(plan.get("features") or []),
            )

        catalog.system_roles = _load_roles(raw.get("system_roles") or {})
        catalog.role_templates = _load_roles(raw.get("role_templates") or {})

        for pair in raw.get("separation_of_duties") or []:
            catalog.separation_of_duties.append(
                SeparationOfDutiesPair(maker=pair["maker"], checker=pair["checker"])
            )

        catalog.validate()
        return catalog

    def validate(self) -> None:
        """Reject dangling references between catalog sections."""
        problems: List[str] = []

        for feature_name, permission_names in self.feature_permissions.items():
            if feature_name not in self.features:
                problems.append(f"feature_permissions references unknown feature {feature_name}")
            for name in permission_names:
                if name not in self.permissions:
                    problems.append(f"feature {feature_name} maps unknown permission {name}")

        for plan in self.plans.values():
            for feature_name in plan.features:
                if feature_name not in self.features:
                    problems.append(f"plan {plan.name} includes unknown feature {feature_name}")

        for template in list(self.system_roles.values()) + list(self.role_templates.values()):
            for name in template.permissions:
                if name not in self.permissions:
                    problems.append(f"role {template.slug} grants unknown permission {name}")
            for pair in self.sod_conflicts(set(template.permissions)):
                problems.append(
                    f"role {template.slug} holds both {pair.maker} and {pair.checker}"
                )

        for pair in self.separation_of_duties:
            for name in (pair.maker, pair.checker):
                if name not in self.permissions:
                    problems.append(f"separation_of_duties references unknown permission {name}")

        if problems:
            raise CatalogError("; ".join(problems))


def _load_roles(raw_roles: Dict[str, Any]) -> Dict[str, RoleTemplate]:
    roles: Dict[str, RoleTemplate] = {}
    for slug, role in raw_roles.items():
        roles[slug] = RoleTemplate(
            slug=slug,
            name=role.get("name", slug.replace("_", " ").title()),
            description=role.get("description"),
            is_delegatable=bool(role.get("is_delegatable", False)),
            permissions=tuple(role.get("permissions") or []),
        )
    return roles


class CatalogLoader:
    """
    Loader for config/catalog.yml.

    Thread-safe with lazy loading and reload support. One instance is owned
    by the AccessRuntime; tests build their own.

    Usage:
        loader = CatalogLoader("config/catalog.yml")
        catalog = loader.catalog
        plan = catalog.plans["professional"]
    """

    def __init__(self, config_path: str):
        self._config_path = Path(config_path)
        self._catalog: Optional[Catalog] = None
        self._load_lock = Lock()

    @property
    def catalog(self) -> Catalog:
        if self._catalog is None:
            self.reload()
        return self._catalog

    def reload(self) -> Catalog:
        """(Re)load the catalog from disk."""
        with self._load_lock:
            if not self._config_path.exists():
                raise CatalogError(f"catalog file not found: {self._config_path}")

            with open(self._config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}

            self._catalog = Catalog.from_dict(raw)
            logger.info(
                "catalog.loaded",
                extra={
                    "path": str(self._config_path),
                    "permissions": len(self._catalog.permissions),
                    "features": len(self._catalog.features),
                    "plans": len(self._catalog.plans),
                },
            )
            return self._catalog
