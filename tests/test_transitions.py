from datetime import date

import pytest
from sqlmodel import select

from mantencion_pro.errors import InvalidTransition, PermissionDenied, ValidationError
from mantencion_pro.fleet import update_availability, update_mileage
from mantencion_pro.models import (
    AvailabilityStatus,
    Equipment,
    FixedRecord,
    MaintenanceType,
    OperationalStatus,
    WorkOrderKind,
    WorkOrderStatus,
)
from mantencion_pro.orders import create_failure_report, create_maintenance, order_history
from mantencion_pro.stock import consume_part
from mantencion_pro.transitions import allowed_transitions, next_maintenance_date, transition

END_OF_JANUARY = date(2026, 1, 31)


@pytest.fixture
def failure_report(session, driver, truck):
    return create_failure_report(session, driver, "Frenos", "Ruido al frenar", truck.id, "alta")


def test_transition_appends_exactly_one_history_entry(session, maintenance_order, mechanic):
    before = [h.as_document() for h in order_history(session, maintenance_order.id)]
    assert len(before) == 1

    order = transition(session, maintenance_order.id, "en_proceso", mechanic, "Iniciando")

    history = order_history(session, order.id)
    assert order.status == WorkOrderStatus.IN_PROGRESS
    assert len(history) == 2
    assert [h.as_document() for h in history[:-1]] == before
    assert history[-1].as_document()["estado"] == "en_proceso"
    assert history[-1].actor == "mecanico@flota.cl"
    assert history[-1].comment == "Iniciando"


def test_earlier_history_entries_are_never_rewritten(session, maintenance_order, mechanic):
    transition(session, maintenance_order.id, "en_proceso", mechanic, "Iniciando")
    before = [h.as_document() for h in order_history(session, maintenance_order.id)]

    transition(session, maintenance_order.id, "completado", mechanic, "Listo")

    history = [h.as_document() for h in order_history(session, maintenance_order.id)]
    assert len(history) == len(before) + 1
    assert history[:len(before)] == before


def test_maintenance_cannot_skip_in_progress(session, maintenance_order, mechanic):
    with pytest.raises(InvalidTransition):
        transition(session, maintenance_order.id, "completado", mechanic)

    assert len(order_history(session, maintenance_order.id)) == 1
    assert maintenance_order.status == WorkOrderStatus.PENDING


def test_completed_maintenance_is_final(session, maintenance_order, mechanic):
    transition(session, maintenance_order.id, "en_proceso", mechanic)
    transition(session, maintenance_order.id, "completado", mechanic)

    assert allowed_transitions(WorkOrderKind.MAINTENANCE, WorkOrderStatus.COMPLETED) == frozenset()
    with pytest.raises(InvalidTransition):
        transition(session, maintenance_order.id, "pendiente", mechanic)


def test_unknown_status(session, maintenance_order, mechanic):
    with pytest.raises(ValidationError):
        transition(session, maintenance_order.id, "archivado", mechanic)


def test_completing_preventive_maintenance_updates_equipment(session, maintenance_order, mechanic, truck):
    transition(session, maintenance_order.id, "en_proceso", mechanic)
    order = transition(session, maintenance_order.id, "completado", mechanic, today=END_OF_JANUARY)

    equipment = session.get(Equipment, truck.id)
    assert order.completed_date == END_OF_JANUARY
    assert equipment.mileage == 12000
    assert equipment.last_maintenance_km == 12000
    assert equipment.last_maintenance_date == END_OF_JANUARY
    assert equipment.next_maintenance_date == date(2026, 4, 30)
    assert equipment.operational_status == OperationalStatus.OPERATIONAL


def test_corrective_maintenance_schedules_review_next_month(session, mechanic, truck):
    order = create_maintenance(
        session, mechanic, "Cambio de embrague", maintenance_type="correctivo", equipment_id=truck.id,
    )
    transition(session, order.id, "en_proceso", mechanic)
    transition(session, order.id, "completado", mechanic, today=END_OF_JANUARY)

    equipment = session.get(Equipment, truck.id)
    assert equipment.next_maintenance_date == date(2026, 2, 28)
    # sem quilometragem na ordem, a do equipamento é mantida
    assert equipment.mileage == 10000


def test_next_maintenance_date():
    assert next_maintenance_date(date(2026, 3, 15), MaintenanceType.PREVENTIVE) == date(2026, 6, 15)
    assert next_maintenance_date(date(2026, 3, 15), MaintenanceType.CORRECTIVE) == date(2026, 4, 15)


def test_completion_without_equipment_row(session, mechanic):
    order = create_maintenance(session, mechanic, "Revisión general", equipment_label="Camión externo")
    order.equipment_id = 999
    session.add(order)
    session.commit()

    transition(session, order.id, "en_proceso", mechanic)
    completed = transition(session, order.id, "completado", mechanic)

    assert completed.status == WorkOrderStatus.COMPLETED


def test_driver_cannot_cancel_failure_report(session, failure_report, driver):
    with pytest.raises(PermissionDenied):
        transition(session, failure_report.id, "cancelado", driver, "Ya no falla")

    assert len(order_history(session, failure_report.id)) == 1


def test_mechanic_cancels_failure_report(session, failure_report, mechanic):
    order = transition(session, failure_report.id, "cancelado", mechanic, "Reporte duplicado")

    assert order.status == WorkOrderStatus.CANCELLED
    assert order.assigned_technician == "Mario Mecánico"
    with pytest.raises(InvalidTransition):
        transition(session, failure_report.id, "pendiente", mechanic)


def test_completing_failure_report_creates_fixed_record(session, failure_report, mechanic, make_part):
    part = make_part(name="Pastillas de freno", stock=4)
    transition(session, failure_report.id, "en_proceso", mechanic, "Revisando")
    consume_part(session, failure_report.id, part.id, requested_qty=2)

    transition(session, failure_report.id, "completado", mechanic, "Pastillas cambiadas")

    records = session.exec(select(FixedRecord)).all()
    assert len(records) == 1
    record = records[0].as_document()
    assert record["originalReportId"] == failure_report.id
    assert record["numeroTicket"] == 1
    assert record["descripcion"] == "Ruido al frenar"
    assert record["repuestos"] == [{"id": part.id, "nombre": "Pastillas de freno", "cantidad": 2}]
    assert record["mecanico"] == "Mario Mecánico"
    assert record["comentario"] == "Pastillas cambiadas"


def test_failure_report_can_be_completed_from_pending(session, failure_report, mechanic):
    order = transition(session, failure_report.id, "completado", mechanic, "Resuelto en ruta")
    assert order.status == WorkOrderStatus.COMPLETED
    assert len(session.exec(select(FixedRecord)).all()) == 1


def test_reopening_failure_report(session, failure_report, mechanic):
    transition(session, failure_report.id, "completado", mechanic, "Listo")
    order = transition(session, failure_report.id, "pendiente", mechanic, "Volvió a fallar")

    assert order.status == WorkOrderStatus.PENDING
    assert order.completed_date is None
    assert [h.status for h in order_history(session, order.id)] == [
        WorkOrderStatus.PENDING, WorkOrderStatus.COMPLETED, WorkOrderStatus.PENDING,
    ]


def test_completion_restores_availability(session, failure_report, mechanic, truck):
    update_availability(session, truck.id, "no_disponible", reason="Motor fundido", estimated_completion="1 semana")

    transition(session, failure_report.id, "completado", mechanic, "Motor reparado")

    equipment = session.get(Equipment, truck.id)
    assert equipment.operational_status == OperationalStatus.OPERATIONAL
    assert equipment.availability_status == AvailabilityStatus.AVAILABLE
    assert equipment.availability_reason == ""
    assert equipment.limitations == ""
    assert equipment.estimated_completion == ""


def test_completing_older_order_keeps_odometer(session, maintenance_order, mechanic, truck):
    update_mileage(session, truck.id, 20000)
    transition(session, maintenance_order.id, "en_proceso", mechanic)

    transition(session, maintenance_order.id, "completado", mechanic)

    equipment = session.get(Equipment, truck.id)
    assert equipment.mileage == 20000
    assert equipment.last_maintenance_km == 12000
