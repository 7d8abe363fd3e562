from datetime import date

import pytest
from sqlmodel import select

from mantencion_pro.errors import InsufficientStock, NotFound, ValidationError
from mantencion_pro.fleet import update_availability
from mantencion_pro.models import (
    Equipment,
    MaintenanceType,
    Part,
    Priority,
    WorkOrder,
    WorkOrderKind,
    WorkOrderStatus,
)
from mantencion_pro.orders import (
    create_failure_report,
    create_maintenance,
    list_work_orders,
    work_order_document,
)


def test_create_maintenance_with_initial_parts(session, mechanic, truck, make_part):
    oil = make_part(name="Aceite", stock=20)
    filter_ = make_part(name="Filtro", stock=3)

    order = create_maintenance(
        session, mechanic, "Mantención 15.000 km", equipment_id=truck.id, mileage=14950,
        order_date=date(2026, 5, 4), parts=[(oil.id, 8), (filter_.id, 1)],
    )

    doc = work_order_document(session, order)
    assert doc["estado"] == "pendiente"
    assert doc["tipo"] == "preventivo"
    assert doc["equipo"] == "Camión #12 - Volvo FH"
    assert doc["fecha"] == "2026-05-04"
    assert doc["mecanico"] == "Mario Mecánico"
    assert doc["repuestos"] == [
        {"id": oil.id, "nombre": "Aceite", "cantidad": 8},
        {"id": filter_.id, "nombre": "Filtro", "cantidad": 1},
    ]
    assert [h["comentario"] for h in doc["historial"]] == ["Mantenimiento registrado"]
    assert session.get(Part, oil.id).stock == 12

    equipment = session.get(Equipment, truck.id)
    assert equipment.mileage == 14950
    assert equipment.last_maintenance_date == date(2026, 5, 4)


def test_create_maintenance_is_all_or_nothing(session, mechanic, truck, make_part):
    oil = make_part(name="Aceite", stock=20)
    filter_ = make_part(name="Filtro", stock=0)

    with pytest.raises(InsufficientStock):
        create_maintenance(
            session, mechanic, "Mantención", equipment_id=truck.id, mileage=14000,
            parts=[(oil.id, 8), (filter_.id, 1)],
        )

    assert session.exec(select(WorkOrder)).all() == []
    assert session.get(Part, oil.id).stock == 20
    assert session.get(Equipment, truck.id).mileage == 10000


def test_create_maintenance_validation(session, mechanic, truck):
    with pytest.raises(ValidationError):
        create_maintenance(session, mechanic, "", equipment_id=truck.id)
    with pytest.raises(ValidationError):
        create_maintenance(session, mechanic, "Sin equipo")
    with pytest.raises(ValidationError):
        create_maintenance(session, mechanic, "Tipo raro", maintenance_type="predictivo", equipment_id=truck.id)
    with pytest.raises(NotFound):
        create_maintenance(session, mechanic, "Equipo inexistente", equipment_id=404)


def test_failure_reports_get_sequential_tickets(session, driver, truck):
    first = create_failure_report(session, driver, "Luces", "Foco quemado", truck.id)
    second = create_failure_report(session, driver, "Frenos", "Ruido", truck.id, "alta")

    assert (first.ticket_number, second.ticket_number) == (1, 2)
    assert second.priority == Priority.HIGH
    assert second.maintenance_type == MaintenanceType.CORRECTIVE

    doc = work_order_document(session, first)
    assert doc["tipoRegistro"] == "falla"
    assert doc["usuarioEmail"] == "conductor@flota.cl"
    assert doc["prioridad"] == "media"
    assert doc["historial"][0]["comentario"] == "Falla reportada"


def test_failure_report_requires_operational_equipment(session, driver, truck):
    update_availability(session, truck.id, "no_disponible", reason="En taller")

    with pytest.raises(ValidationError):
        create_failure_report(session, driver, "Luces", "Foco quemado", truck.id)


def test_failure_report_validation(session, driver, truck):
    with pytest.raises(ValidationError):
        create_failure_report(session, driver, "", "Foco quemado", truck.id)
    with pytest.raises(ValidationError):
        create_failure_report(session, driver, "Luces", "Foco", truck.id, "urgente")
    with pytest.raises(NotFound):
        create_failure_report(session, driver, "Luces", "Foco", 404)


def test_list_work_orders_filters(session, mechanic, driver, truck):
    create_maintenance(session, mechanic, "Preventiva", equipment_id=truck.id)
    create_maintenance(session, mechanic, "Correctiva", maintenance_type="correctivo", equipment_label="Grúa")
    create_failure_report(session, driver, "Luces", "Foco quemado", truck.id)

    maintenance = list_work_orders(session, kind=WorkOrderKind.MAINTENANCE)
    assert [o.description for o in maintenance] == ["Correctiva", "Preventiva"]

    assert len(list_work_orders(session, maintenance_type=MaintenanceType.CORRECTIVE)) == 2
    assert len(list_work_orders(session, equipment_id=truck.id)) == 2
    assert len(list_work_orders(session, reporter_id=driver.uid)) == 1
    assert len(list_work_orders(session, status=WorkOrderStatus.COMPLETED)) == 0


def test_create_maintenance_never_lowers_mileage(session, mechanic, truck):
    create_maintenance(session, mechanic, "Registro atrasado", equipment_id=truck.id, mileage=8000)

    assert session.get(Equipment, truck.id).mileage == 10000
