"""Papéis, capacidades e as dependências FastAPI que as verificam.

O provedor de autenticação fica fora da aplicação; o uid do usuário chega
no cabeçalho `X-User-Id` e o papel é lido da tabela de usuários.
"""
from enum import Enum
from typing import List, Optional

from fastapi import Depends, Header, HTTPException
from sqlmodel import Session

from mantencion_pro.database import get_session
from mantencion_pro.errors import PermissionDenied
from mantencion_pro.models import Role, User


class Capability(str, Enum):
    VIEW_HOME = "view_home"
    MANAGE_INVENTORY = "manage_inventory"
    MANAGE_EQUIPMENT = "manage_equipment"
    MANAGE_MAINTENANCE = "manage_maintenance"
    VIEW_AVAILABILITY = "view_availability"
    EDIT_AVAILABILITY = "edit_availability"
    REPORT_FAILURES = "report_failures"
    MANAGE_FAILURES = "manage_failures"
    MANAGE_WORKERS = "manage_workers"


_STAFF = frozenset({
    Capability.VIEW_HOME,
    Capability.MANAGE_INVENTORY,
    Capability.MANAGE_EQUIPMENT,
    Capability.MANAGE_MAINTENANCE,
    Capability.VIEW_AVAILABILITY,
    Capability.EDIT_AVAILABILITY,
    Capability.REPORT_FAILURES,
    Capability.MANAGE_FAILURES,
})

ROLE_CAPABILITIES = {
    Role.ADMIN: _STAFF | {Capability.MANAGE_WORKERS},
    Role.MECHANIC: _STAFF,
    Role.DRIVER: frozenset({Capability.VIEW_HOME, Capability.VIEW_AVAILABILITY, Capability.REPORT_FAILURES}),
}

# Papel vazio ou desconhecido
DEFAULT_CAPABILITIES = frozenset({Capability.VIEW_HOME, Capability.VIEW_AVAILABILITY})

# Seções (abas) na ordem em que aparecem
SECTIONS = [
    ("Home", Capability.VIEW_HOME),
    ("Inventario", Capability.MANAGE_INVENTORY),
    ("Equipos", Capability.MANAGE_EQUIPMENT),
    ("Mantención", Capability.MANAGE_MAINTENANCE),
    ("Disponibilidad", Capability.VIEW_AVAILABILITY),
    ("Reportes", Capability.MANAGE_FAILURES),
    ("Trabajadores", Capability.MANAGE_WORKERS),
]


def capabilities_for(role: Optional[Role]) -> frozenset:
    return ROLE_CAPABILITIES.get(role, DEFAULT_CAPABILITIES)


def sections_for(role: Optional[Role]) -> List[str]:
    caps = capabilities_for(role)
    sections = [label for label, cap in SECTIONS if cap in caps]
    # Motoristas só reportam; a aba muda de nome
    if Capability.REPORT_FAILURES in caps and Capability.MANAGE_FAILURES not in caps:
        sections.append("Reportar Falla")
    return sections


def has_capability(user: User, capability: Capability) -> bool:
    return capability in capabilities_for(user.role)


# --- Dependências ---

def current_user(
    x_user_id: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
) -> User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Debe iniciar sesión")
    user = session.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Usuario no registrado")
    return user


def require_capability(*capabilities: Capability):
    """Dependência que exige pelo menos uma das capacidades informadas."""

    def dep(user: User = Depends(current_user)) -> User:
        if not any(has_capability(user, cap) for cap in capabilities):
            raise PermissionDenied("No tiene permiso para esta acción")
        return user

    return dep
