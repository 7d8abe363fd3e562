import pytest

from mantencion_pro.models import Role
from mantencion_pro.roles import Capability, capabilities_for, sections_for


def test_admin_manages_workers_mechanic_does_not():
    assert Capability.MANAGE_WORKERS in capabilities_for(Role.ADMIN)
    assert Capability.MANAGE_WORKERS not in capabilities_for(Role.MECHANIC)
    assert capabilities_for(Role.ADMIN) - capabilities_for(Role.MECHANIC) == {Capability.MANAGE_WORKERS}


def test_driver_capabilities():
    assert capabilities_for(Role.DRIVER) == {
        Capability.VIEW_HOME, Capability.VIEW_AVAILABILITY, Capability.REPORT_FAILURES,
    }


@pytest.mark.parametrize("role", [None, "", "supervisor"])
def test_unknown_role_only_sees_availability(role):
    assert capabilities_for(role) == {Capability.VIEW_HOME, Capability.VIEW_AVAILABILITY}
    assert sections_for(role) == ["Home", "Disponibilidad"]


def test_sections():
    assert sections_for(Role.ADMIN) == [
        "Home", "Inventario", "Equipos", "Mantención", "Disponibilidad", "Reportes", "Trabajadores",
    ]
    assert "Trabajadores" not in sections_for(Role.MECHANIC)
    assert sections_for(Role.DRIVER) == ["Home", "Disponibilidad", "Reportar Falla"]
