"""Roles, capabilities and the authorization policy structure.

``normalize_role`` is the only way a raw role label from the ``people`` table
becomes a :class:`Role`; everything past it works with the enum.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional, Tuple

from retail_ops.config import Config


class Role(str, Enum):
    ADMIN = "admin"
    COORDINADOR = "coordinador"
    LIDER = "lider"
    ASESOR = "asesor"
    PROMOTOR = "promotor"
    LOGISTICA = "logistica"
    UNKNOWN = "unknown"


FALLBACK_ROLE = Role.UNKNOWN

# Exact labels first, then substrings. Order matters for substring matches:
# "COORDINADOR DE LOGISTICA" is a coordinator, "JEFE DE VENTAS" a leader.
ROLE_SYNONYMS: Tuple[Tuple[Role, Tuple[str, ...]], ...] = (
    (Role.ADMIN, ("GERENCIA", "GERENTE", "ADMIN", "ADMINISTRADOR", "ADMINISTRADORA")),
    (Role.COORDINADOR, ("COORDINADOR", "COORDINADORA", "COORDINACION")),
    (Role.LIDER, ("LIDER", "JEFE", "JEFA", "SUPERVISOR", "SUPERVISORA")),
    (Role.LOGISTICA, ("LOGISTICA", "RUTAS", "DELIVERY", "REPARTIDOR", "REPARTIDORA")),
    (Role.PROMOTOR, ("PROMOTOR", "PROMOTORA")),
    (Role.ASESOR, ("ASESOR", "ASESORA", "VENDEDOR", "VENDEDORA")),
)


def _fold(raw_label: object) -> str:
    text = str(raw_label or "").strip().upper()
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped)


def normalize_role(raw_label: object, fallback: Role = FALLBACK_ROLE) -> Role:
    """Map a free-text role label to a :class:`Role`. Never raises."""
    if isinstance(raw_label, Role):
        return raw_label
    label = _fold(raw_label)
    if not label:
        return fallback

    for role, synonyms in ROLE_SYNONYMS:
        if label in synonyms or label == role.value.upper():
            return role

    for role, synonyms in ROLE_SYNONYMS:
        if any(synonym in label for synonym in synonyms):
            return role
    return fallback


class Capability:
    """Capability names used by the default policy."""

    VIEW_KPIS = "view:kpis"
    VIEW_SALES_REPORT = "view:sales-report"
    VIEW_RESUMEN_ASESORES = "view:resumen-asesores"
    VIEW_RESUMEN_PROMOTORES = "view:resumen-promotores"
    VIEW_REPORTE_ASISTENCIA = "view:reporte-asistencia"
    VIEW_LOGISTICA = "view:logistica"
    VIEW_REGISTRO_ASESORES = "view:registro-asesores"
    VIEW_REGISTRO_PROMOTORES = "view:registro-promotores"
    VIEW_DEVOLUCIONES = "view:devoluciones"
    VIEW_ASISTENCIA = "view:asistencia"
    VIEW_PLAYBOOK = "view:playbook"
    VIEW_USERS_ADMIN = "view:users-admin"
    VIEW_MI_RESUMEN = "view:mi-resumen"
    VIEW_METRICS = "view:metrics"
    VIEW_FINANCIAL_CONTROL = "view:financial-control"

    CREATE_ORDERS = "create:orders"
    VIEW_ORDERS = "view:orders"
    ASSIGN_ORDERS = "assign:orders"
    UPDATE_ORDER_STATUS = "update:order-status"
    VIEW_DELIVERY_STATS = "view:delivery-stats"
    MANAGE_PEOPLE = "manage:people"


ADMIN_WILDCARD = "*"

DEFAULT_ROLE_CAPABILITIES: Mapping[Role, frozenset] = {
    Role.ADMIN: frozenset({ADMIN_WILDCARD}),
    Role.COORDINADOR: frozenset({
        Capability.VIEW_KPIS, Capability.VIEW_LOGISTICA, Capability.VIEW_ASISTENCIA,
        Capability.VIEW_REPORTE_ASISTENCIA, Capability.VIEW_RESUMEN_ASESORES, Capability.VIEW_PLAYBOOK,
        Capability.CREATE_ORDERS, Capability.VIEW_ORDERS, Capability.ASSIGN_ORDERS,
        Capability.UPDATE_ORDER_STATUS, Capability.VIEW_DELIVERY_STATS,
    }),
    Role.LIDER: frozenset({
        Capability.VIEW_KPIS, Capability.VIEW_RESUMEN_ASESORES, Capability.VIEW_RESUMEN_PROMOTORES,
        Capability.VIEW_REPORTE_ASISTENCIA, Capability.VIEW_LOGISTICA, Capability.VIEW_ASISTENCIA,
        Capability.VIEW_SALES_REPORT, Capability.VIEW_PLAYBOOK,
        Capability.CREATE_ORDERS, Capability.VIEW_ORDERS, Capability.ASSIGN_ORDERS,
        Capability.UPDATE_ORDER_STATUS, Capability.VIEW_DELIVERY_STATS,
    }),
    Role.ASESOR: frozenset({
        Capability.VIEW_RESUMEN_ASESORES, Capability.VIEW_REGISTRO_ASESORES, Capability.VIEW_ASISTENCIA,
        Capability.VIEW_PLAYBOOK, Capability.VIEW_MI_RESUMEN, Capability.VIEW_DEVOLUCIONES,
        Capability.CREATE_ORDERS,
    }),
    Role.PROMOTOR: frozenset({
        Capability.VIEW_REGISTRO_PROMOTORES, Capability.VIEW_MI_RESUMEN, Capability.CREATE_ORDERS,
    }),
    Role.LOGISTICA: frozenset({
        Capability.VIEW_KPIS, Capability.VIEW_LOGISTICA, Capability.VIEW_ASISTENCIA,
        Capability.VIEW_ORDERS, Capability.UPDATE_ORDER_STATUS, Capability.VIEW_DELIVERY_STATS,
    }),
    Role.UNKNOWN: frozenset(),
}


@dataclass(frozen=True)
class RouteRule:
    """A path pattern guarded by one capability, optionally for some methods only."""

    pattern: str
    capability: str
    methods: Optional[frozenset] = None

    def matches(self, path: str, method: Optional[str] = None) -> bool:
        if self.methods is not None and method is not None and method.upper() not in self.methods:
            return False
        return re.match(self.pattern, path) is not None


def _rule(pattern: str, capability: str, methods: Optional[Iterable[str]] = None) -> RouteRule:
    return RouteRule(pattern, capability, frozenset(m.upper() for m in methods) if methods else None)


# First match wins: keep specific prefixes ahead of their parents.
DEFAULT_ROUTE_RULES: Tuple[RouteRule, ...] = (
    _rule(r"^/dashboard/sales-report(?:/.*)?$", Capability.VIEW_SALES_REPORT),
    _rule(r"^/dashboard/vendedores(?:/.*)?$", Capability.VIEW_RESUMEN_ASESORES),
    _rule(r"^/dashboard/promotores/admin(?:/.*)?$", Capability.VIEW_RESUMEN_PROMOTORES),
    _rule(r"^/dashboard/promotores/registro(?:/.*)?$", Capability.VIEW_REGISTRO_PROMOTORES),
    _rule(r"^/dashboard/admin/resumen(?:/.*)?$", Capability.VIEW_REPORTE_ASISTENCIA),
    _rule(r"^/dashboard/admin/usuarios(?:/.*)?$", Capability.VIEW_USERS_ADMIN),
    _rule(r"^/dashboard/asesores/registro(?:/.*)?$", Capability.VIEW_REGISTRO_ASESORES),
    _rule(r"^/dashboard/asesores/devoluciones(?:/.*)?$", Capability.VIEW_DEVOLUCIONES),
    _rule(r"^/dashboard/asesores/playbook-whatsapp(?:/.*)?$", Capability.VIEW_PLAYBOOK),
    _rule(r"^/asistencia(?:/.*)?$", Capability.VIEW_ASISTENCIA),
    _rule(r"^/logistica(?:/.*)?$", Capability.VIEW_LOGISTICA),
    _rule(r"^/mi/resumen(?:/.*)?$", Capability.VIEW_MI_RESUMEN),
    _rule(r"^/admin/metrics$", Capability.VIEW_METRICS),
    _rule(r"^/api/people(?:/.*)?$", Capability.MANAGE_PEOPLE),
    _rule(r"^/api/orders/[^/]+/assign$", Capability.ASSIGN_ORDERS, ["POST"]),
    _rule(r"^/api/orders/[^/]+/assign$", Capability.VIEW_ORDERS, ["GET"]),
    _rule(r"^/api/orders/[^/]+/transition$", Capability.UPDATE_ORDER_STATUS),
    _rule(r"^/api/orders$", Capability.CREATE_ORDERS, ["POST"]),
    _rule(r"^/api/orders(?:/.*)?$", Capability.VIEW_ORDERS, ["GET"]),
    _rule(r"^/api/delivery/[^/]+/stats$", Capability.VIEW_DELIVERY_STATS),
)

DEFAULT_PUBLIC_PREFIXES: Tuple[str, ...] = (
    "/api/auth/login",
    "/api/auth/logout",
    "/health",
    "/favicon.ico",
    "/robots.txt",
)

# Any signed-in person may reach these, whatever the role
DEFAULT_SESSION_ONLY_PATTERNS: Tuple[str, ...] = (
    r"^/api/me$",
    r"^/api/auth/",
    r"^/dashboard/?$",
)

# Gated by person id rather than role: only financial_control_ids get in
DEFAULT_FINANCIAL_CONTROL_PREFIXES: Tuple[str, ...] = ("/dashboard/financial-control",)

# Roles listed here may only reach these paths; the route rules still apply on top
DEFAULT_CONFINED_PATHS: Mapping[Role, Tuple[str, ...]] = {
    Role.ASESOR: (
        r"^/dashboard/asesores/HOME(?:/.*)?$",
        r"^/dashboard/asesores/registro(?:/.*)?$",
        r"^/dashboard/asesores/devoluciones(?:/.*)?$",
        r"^/dashboard/asesores/playbook-whatsapp(?:/.*)?$",
        r"^/asistencia(?:/.*)?$",
        r"^/mi/resumen(?:/.*)?$",
        r"^/api/orders$",
    ),
    Role.PROMOTOR: (
        r"^/dashboard/promotores(?:/.*)?$",
        r"^/mi/resumen(?:/.*)?$",
        r"^/api/orders$",
    ),
}

DEFAULT_HOME_PATHS: Mapping[Role, str] = {
    Role.PROMOTOR: "/dashboard/promotores",
    Role.ASESOR: "/dashboard/asesores/HOME",
    Role.LOGISTICA: "/logistica",
}


@dataclass(frozen=True)
class AuthorizationPolicy:
    """Everything the Authorizer needs to decide; swapped wholesale in tests."""

    role_capabilities: Mapping[Role, frozenset] = field(
        default_factory=lambda: dict(DEFAULT_ROLE_CAPABILITIES)
    )
    route_rules: Tuple[RouteRule, ...] = DEFAULT_ROUTE_RULES
    public_prefixes: Tuple[str, ...] = DEFAULT_PUBLIC_PREFIXES
    session_only_patterns: Tuple[str, ...] = DEFAULT_SESSION_ONLY_PATTERNS
    home_paths: Mapping[Role, str] = field(default_factory=lambda: dict(DEFAULT_HOME_PATHS))
    default_home: str = "/dashboard"
    # Unmapped paths are allowed unless this is turned off; see DESIGN.md
    default_allow_unmapped: bool = True
    financial_control_ids: frozenset = frozenset()
    financial_control_prefixes: Tuple[str, ...] = DEFAULT_FINANCIAL_CONTROL_PREFIXES
    confined_paths: Mapping[Role, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_CONFINED_PATHS)
    )

    def capabilities_for(self, role: Role) -> frozenset:
        return self.role_capabilities.get(role, frozenset())

    def is_public(self, path: str) -> bool:
        return any(path == prefix or path.startswith(prefix) for prefix in self.public_prefixes)

    def is_session_only(self, path: str) -> bool:
        return any(re.match(pattern, path) for pattern in self.session_only_patterns)

    def is_financial_path(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.financial_control_prefixes)

    def within_confinement(self, role: Role, path: str) -> bool:
        """True unless ``role`` is confined and ``path`` is outside its allow-list."""
        allowed = self.confined_paths.get(role)
        if allowed is None:
            return True
        return any(re.match(pattern, path) for pattern in allowed)

    def rule_for(self, path: str, method: Optional[str] = None) -> Optional[RouteRule]:
        for rule in self.route_rules:
            if rule.matches(path, method):
                return rule
        return None


def default_policy(config=None) -> AuthorizationPolicy:
    """Build the production policy, reading the configurable knobs from ``config``."""
    config = config or Config
    return AuthorizationPolicy(
        default_allow_unmapped=config.AUTHZ_DEFAULT_ALLOW_UNMAPPED,
        financial_control_ids=frozenset(config.FINANCIAL_CONTROL_IDS),
    )


__all__ = [
    "Role",
    "FALLBACK_ROLE",
    "ROLE_SYNONYMS",
    "normalize_role",
    "Capability",
    "ADMIN_WILDCARD",
    "DEFAULT_ROLE_CAPABILITIES",
    "RouteRule",
    "DEFAULT_ROUTE_RULES",
    "DEFAULT_FINANCIAL_CONTROL_PREFIXES",
    "DEFAULT_CONFINED_PATHS",
    "AuthorizationPolicy",
    "default_policy",
]
