"""Cadastro de equipamentos: quilometragem, disponibilidade e exclusão em cascata."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from mantencion_pro.database import atomic
from mantencion_pro.errors import DuplicateEquipment, NotFound, ValidationError
from mantencion_pro.models import (
    AvailabilityStatus,
    Equipment,
    OperationalStatus,
    StatusHistoryEntry,
    WorkOrder,
    WorkOrderPart,
    WorkOrderStatus,
)

logger = logging.getLogger(__name__)

# disponibilidade -> estado operacional
AVAILABILITY_TO_OPERATIONAL = {
    AvailabilityStatus.AVAILABLE: OperationalStatus.OPERATIONAL,
    AvailabilityStatus.PARTIAL: OperationalStatus.IN_MAINTENANCE,
    AvailabilityStatus.UNAVAILABLE: OperationalStatus.OUT_OF_SERVICE,
}


def get_equipment(session: Session, equipment_id: int) -> Equipment:
    equipment = session.get(Equipment, equipment_id)
    if equipment is None:
        raise NotFound(f"Equipo {equipment_id} no encontrado")
    return equipment


def _check_unique(session: Session, number: str, plate: str, exclude_id: Optional[int] = None):
    if not number or not plate:
        raise ValidationError("Número y patente son obligatorios")
    query = select(Equipment).where(or_(Equipment.number == number, Equipment.plate == plate))
    if exclude_id is not None:
        query = query.where(Equipment.id != exclude_id)
    for other in session.exec(query).all():
        if other.number == number:
            raise DuplicateEquipment(f"Ya existe un equipo con el número {number}")
        raise DuplicateEquipment(f"Ya existe un equipo con la patente {plate}")


def create_equipment(session: Session, number: str, plate: str, **fields) -> Equipment:
    number, plate = (number or "").strip(), (plate or "").strip().upper()
    with atomic(session):
        _check_unique(session, number, plate)
        equipment = Equipment(number=number, plate=plate, **fields)
        session.add(equipment)
    session.refresh(equipment)
    logger.info("Equipamento %s (%s) cadastrado", equipment.number, equipment.plate)
    return equipment


def update_equipment(session: Session, equipment_id: int, number: str, plate: str, **fields) -> Equipment:
    number, plate = (number or "").strip(), (plate or "").strip().upper()
    with atomic(session):
        equipment = get_equipment(session, equipment_id)
        _check_unique(session, number, plate, exclude_id=equipment_id)
        equipment.number = number
        equipment.plate = plate
        for key, value in fields.items():
            setattr(equipment, key, value)
        equipment.updated_at = datetime.now()
        session.add(equipment)
    session.refresh(equipment)
    return equipment


def update_mileage(session: Session, equipment_id: int, km: int) -> bool:
    """
    Atualiza a quilometragem. Retorna True quando o equipamento atingiu o
    quilômetro da próxima manutenção preventiva.
    """
    with atomic(session):
        equipment = get_equipment(session, equipment_id)
        if not km or km <= 0:
            raise ValidationError("Ingrese un kilometraje válido")
        if km < equipment.mileage:
            raise ValidationError("El nuevo kilometraje debe ser mayor que el actual")
        equipment.mileage = km
        equipment.updated_at = datetime.now()
        session.add(equipment)
        due = equipment.next_maintenance_km is not None and km >= equipment.next_maintenance_km
    if due:
        logger.info("Equipamento %s atingiu %s km: manutenção preventiva pendente", equipment_id, km)
    return due


def update_availability(
    session: Session,
    equipment_id: int,
    status,
    reason: str = "",
    limitations: str = "",
    estimated_completion: str = "",
) -> Equipment:
    try:
        status = AvailabilityStatus(status)
    except ValueError:
        raise ValidationError(f"Disponibilidad desconocida: {status}") from None
    if status == AvailabilityStatus.UNAVAILABLE and not reason:
        raise ValidationError("Indique el motivo cuando el camión no está disponible")
    if status == AvailabilityStatus.PARTIAL and (not reason or not limitations):
        raise ValidationError("Indique el motivo y las limitaciones cuando el camión está parcialmente disponible")

    with atomic(session):
        equipment = get_equipment(session, equipment_id)
        equipment.availability_status = status
        equipment.availability_reason = "" if status == AvailabilityStatus.AVAILABLE else reason
        equipment.limitations = limitations if status == AvailabilityStatus.PARTIAL else ""
        equipment.estimated_completion = "" if status == AvailabilityStatus.AVAILABLE else estimated_completion
        equipment.operational_status = AVAILABILITY_TO_OPERATIONAL[status]
        equipment.updated_at = datetime.now()
        session.add(equipment)
    session.refresh(equipment)
    logger.info("Disponibilidade do equipamento %s: %s", equipment_id, status.value)
    return equipment


def sync_operational_status(session: Session, equipment_id: int) -> Equipment:
    """
    Ordem em andamento coloca um equipamento Operativo em manutenção;
    sem ordens abertas ele volta a Operativo, salvo se a disponibilidade
    parcial foi informada manualmente.
    """
    with atomic(session):
        equipment = get_equipment(session, equipment_id)
        statuses = {o.status for o in session.exec(
            select(WorkOrder).where(WorkOrder.equipment_id == equipment_id)
        ).all()}
        if WorkOrderStatus.IN_PROGRESS in statuses and equipment.operational_status == OperationalStatus.OPERATIONAL:
            equipment.operational_status = OperationalStatus.IN_MAINTENANCE
        elif (
            equipment.operational_status == OperationalStatus.IN_MAINTENANCE
            and equipment.availability_status == AvailabilityStatus.AVAILABLE
            and not statuses & {WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.PENDING}
        ):
            equipment.operational_status = OperationalStatus.OPERATIONAL
        session.add(equipment)
    session.refresh(equipment)
    return equipment


def delete_equipment(session: Session, equipment_id: int) -> int:
    """Exclui o equipamento e todas as ordens vinculadas. Retorna quantas ordens foram excluídas."""
    with atomic(session):
        equipment = get_equipment(session, equipment_id)
        orders = session.exec(select(WorkOrder).where(WorkOrder.equipment_id == equipment_id)).all()
        for order in orders:
            for entry in session.exec(select(WorkOrderPart).where(WorkOrderPart.order_id == order.id)).all():
                session.delete(entry)
            for item in session.exec(select(StatusHistoryEntry).where(StatusHistoryEntry.order_id == order.id)).all():
                session.delete(item)
            session.delete(order)
        session.flush()
        session.delete(equipment)
    logger.info("Equipamento %s excluído com %s ordens", equipment_id, len(orders))
    return len(orders)
