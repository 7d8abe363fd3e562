import asyncio
import json
import logging
from datetime import date
from pathlib import Path
from typing import Annotated, List, Optional

from fastapi import FastAPI, Request, Form, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates
from sqlmodel import Session, select

from mantencion_pro import fleet, orders, stock
from mantencion_pro.config import setup_logging
from mantencion_pro.database import atomic, create_db_and_tables, get_session
from mantencion_pro.errors import MaintenanceError, PermissionDenied, ValidationError
from mantencion_pro.events import SNAPSHOT_LOADERS, hub, load_snapshot
from mantencion_pro.models import (
    AvailabilityStatus,
    Equipment,
    FixedRecord,
    MaintenanceType,
    OperationalStatus,
    Part,
    Role,
    User,
    WorkOrder,
    WorkOrderKind,
    WorkOrderStatus,
)
from mantencion_pro.roles import (
    Capability,
    capabilities_for,
    current_user,
    has_capability,
    require_capability,
    sections_for,
)
from mantencion_pro.transitions import transition

logger = logging.getLogger(__name__)

app = FastAPI(title="MantencionPRO")
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

@app.on_event("startup")
def on_startup():
    setup_logging()
    create_db_and_tables()

@app.exception_handler(MaintenanceError)
async def maintenance_error_handler(request: Request, exc: MaintenanceError):
    logger.warning("%s em %s: %s", type(exc).__name__, request.url.path, exc.message)
    if request.headers.get("HX-Request"):
        # Retorna um script JS simples para alertar o usuário sem quebrar a página
        return HTMLResponse(f"<script>alert({json.dumps('Error: ' + exc.message)});</script>")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )

# --- Painel ---
def dashboard_summary(session: Session) -> dict:
    # 1. Equipamentos operativos e porcentagem de disponibilidade
    equipment = session.exec(select(Equipment)).all()
    active = sum(1 for e in equipment if e.operational_status == OperationalStatus.OPERATIONAL)
    percentage = round(active * 100 / len(equipment)) if equipment else 0

    # 2. Manutenções pendentes
    pending = len(orders.list_work_orders(
        session, kind=WorkOrderKind.MAINTENANCE, status=WorkOrderStatus.PENDING
    ))

    # 3. Itens com estoque baixo
    low_stock = len(stock.low_stock_parts(session))

    return {
        "totalEquipos": len(equipment),
        "equiposActivos": active,
        "porcentajeOperativo": percentage,
        "mantencionesPendientes": pending,
        "inventarioBajo": low_stock,
    }

@app.get("/", response_class=HTMLResponse)
async def read_root(request: Request, session: Session = Depends(get_session)):
    return templates.TemplateResponse(request, "index.html", {"summary": dashboard_summary(session)})

@app.get("/dashboard")
async def read_dashboard(user: User = Depends(current_user), session: Session = Depends(get_session)):
    return dashboard_summary(session)

@app.get("/me")
async def read_me(user: User = Depends(current_user)):
    return {
        **user.as_document(),
        "capacidades": sorted(c.value for c in capabilities_for(user.role)),
        "secciones": sections_for(user.role),
    }

# --- Rotas de Trabalhadores ---
@app.post("/users", status_code=201)
async def add_user(
    uid: Annotated[str, Form()],
    email: Annotated[str, Form()],
    role: Annotated[Role, Form()],
    name: Annotated[Optional[str], Form()] = None,
    user: User = Depends(require_capability(Capability.MANAGE_WORKERS)),
    session: Session = Depends(get_session),
):
    with atomic(session):
        if session.get(User, uid) is not None:
            raise ValidationError(f"El usuario {uid} ya existe")
        new_user = User(uid=uid, email=email, name=name, role=role)
        session.add(new_user)
    session.refresh(new_user)
    return new_user.as_document()

@app.get("/workers")
async def read_workers(
    user: User = Depends(require_capability(Capability.MANAGE_WORKERS)),
    session: Session = Depends(get_session),
):
    mechanics = session.exec(select(User).where(User.role == Role.MECHANIC).order_by(User.email)).all()
    drivers = session.exec(select(User).where(User.role == Role.DRIVER).order_by(User.email)).all()
    return {
        "mecanicos": [u.as_document() for u in mechanics],
        "conductores": [u.as_document() for u in drivers],
    }

@app.delete("/workers/{uid}")
async def delete_worker(
    uid: str,
    user: User = Depends(require_capability(Capability.MANAGE_WORKERS)),
    session: Session = Depends(get_session),
):
    worker = session.get(User, uid)
    if not worker: raise HTTPException(status_code=404, detail="Trabajador no encontrado")
    if worker.uid == user.uid:
        raise ValidationError("No puede eliminar su propio usuario")
    with atomic(session):
        session.delete(worker)
    return Response(status_code=200)

# --- Rotas de Estoque ---
@app.get("/inventory")
async def read_inventory(
    search: str = "",
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    query = select(Part)

    if search:
        query = query.where(
            (Part.name.ilike(f"%{search}%")) |
            (Part.category.ilike(f"%{search}%"))
        )

    items = session.exec(query.order_by(Part.name)).all()
    return [item.as_document() for item in items]

@app.post("/inventory/add", status_code=201)
async def add_item(
    name: Annotated[str, Form()],
    code: Annotated[Optional[str], Form()] = None,
    stock_qty: Annotated[Optional[int], Form(alias="stock")] = None,
    cantidad: Annotated[Optional[int], Form()] = None,
    minimum: Annotated[int, Form()] = 0,
    category: Annotated[str, Form()] = "",
    location: Annotated[str, Form()] = "",
    supplier: Annotated[str, Form()] = "",
    unit: Annotated[str, Form()] = "",
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    # Clientes antigos mandam `cantidad`; o adaptador escolhe o saldo
    new_item = stock.part_from_document({
        "nombre": name, "codigo": code, "stock": stock_qty, "cantidad": cantidad,
        "minimo": minimum, "categoria": category, "ubicacion": location,
        "proveedor": supplier, "unidad": unit,
    })
    if not new_item.name:
        raise ValidationError("Por favor complete los campos obligatorios")
    with atomic(session):
        session.add(new_item)
    session.refresh(new_item)
    hub.publish("repuestos")
    return new_item.as_document()

@app.get("/inventory/low-stock")
async def read_low_stock(
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    return [item.as_document() for item in stock.low_stock_parts(session)]

@app.get("/inventory/{item_id}")
async def read_item(
    item_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    item = session.get(Part, item_id)
    if not item: raise HTTPException(status_code=404, detail="Repuesto no encontrado")
    return item.as_document()

@app.put("/inventory/{item_id}")
async def update_item(
    item_id: int,
    name: Annotated[str, Form()],
    code: Annotated[Optional[str], Form()] = None,
    minimum: Annotated[int, Form()] = 0,
    category: Annotated[str, Form()] = "",
    location: Annotated[str, Form()] = "",
    supplier: Annotated[str, Form()] = "",
    unit: Annotated[str, Form()] = "",
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    item = session.get(Part, item_id)
    if not item: raise HTTPException(status_code=404, detail="Repuesto no encontrado")

    with atomic(session):
        item.name = name
        item.code = code
        item.minimum = max(0, minimum)
        item.category = category
        item.location = location
        item.supplier = supplier
        item.unit = unit
        session.add(item)
    session.refresh(item)
    hub.publish("repuestos")
    return item.as_document()

@app.put("/inventory/{item_id}/stock")
async def set_item_stock(
    item_id: int,
    quantity: Annotated[int, Form()],
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    item = stock.adjust_stock(session, item_id, quantity)
    hub.publish("repuestos")
    return item.as_document()

@app.post("/inventory/{item_id}/increment")
async def increment_item(
    item_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    item = stock.increment_stock(session, item_id)
    hub.publish("repuestos")
    return item.as_document()

@app.post("/inventory/{item_id}/decrement")
async def decrement_item(
    item_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    item = stock.decrement_stock(session, item_id)
    hub.publish("repuestos")
    return item.as_document()

@app.get("/inventory/{item_id}/usage")
async def read_item_usage(
    item_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    return stock.part_usage(session, item_id)

@app.delete("/inventory/{item_id}")
async def delete_item(
    item_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_INVENTORY)),
    session: Session = Depends(get_session),
):
    item = session.get(Part, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Repuesto no encontrado")
    with atomic(session):
        session.delete(item)
    hub.publish("repuestos")
    return Response(status_code=200)

# --- Rotas de Equipamentos ---
@app.get("/equipment")
async def read_equipment(
    search: str = "",
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    query = select(Equipment)
    if search:
        query = query.where(
            (Equipment.number.ilike(f"%{search}%")) |
            (Equipment.model.ilike(f"%{search}%")) |
            (Equipment.driver.ilike(f"%{search}%"))
        )
    return [e.as_document() for e in session.exec(query.order_by(Equipment.number)).all()]

@app.post("/equipment/add", status_code=201)
async def add_equipment(
    number: Annotated[str, Form()],
    plate: Annotated[str, Form()],
    model: Annotated[str, Form()] = "",
    year: Annotated[Optional[int], Form()] = None,
    driver: Annotated[Optional[str], Form()] = None,
    mileage: Annotated[int, Form()] = 0,
    last_maintenance_km: Annotated[Optional[int], Form()] = None,
    next_maintenance_km: Annotated[Optional[int], Form()] = None,
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    equipment = fleet.create_equipment(
        session, number, plate, model=model, year=year or date.today().year, driver=driver,
        mileage=max(0, mileage), last_maintenance_km=last_maintenance_km,
        next_maintenance_km=next_maintenance_km,
    )
    hub.publish("equipos")
    return equipment.as_document()

@app.get("/equipment/{equipment_id}")
async def read_equipment_details(
    equipment_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    if not session.get(Equipment, equipment_id): raise HTTPException(status_code=404, detail="Equipo no encontrado")
    # Ao abrir o histórico o estado operacional é recalculado
    equipment = fleet.sync_operational_status(session, equipment_id)
    history = orders.list_work_orders(session, kind=WorkOrderKind.MAINTENANCE, equipment_id=equipment_id)
    return {
        **equipment.as_document(),
        "historial": [orders.work_order_document(session, o) for o in history],
        "mantencionesCompletadas": sum(1 for o in history if o.status == WorkOrderStatus.COMPLETED),
    }

@app.put("/equipment/{equipment_id}")
async def update_equipment(
    equipment_id: int,
    number: Annotated[str, Form()],
    plate: Annotated[str, Form()],
    model: Annotated[str, Form()] = "",
    year: Annotated[Optional[int], Form()] = None,
    driver: Annotated[Optional[str], Form()] = None,
    last_maintenance_km: Annotated[Optional[int], Form()] = None,
    next_maintenance_km: Annotated[Optional[int], Form()] = None,
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    equipment = fleet.update_equipment(
        session, equipment_id, number, plate, model=model, year=year, driver=driver,
        last_maintenance_km=last_maintenance_km, next_maintenance_km=next_maintenance_km,
    )
    hub.publish("equipos")
    return equipment.as_document()

@app.put("/equipment/{equipment_id}/mileage")
async def update_equipment_mileage(
    equipment_id: int,
    km: Annotated[int, Form()],
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    due = fleet.update_mileage(session, equipment_id, km)
    hub.publish("equipos")
    return {"equipo": fleet.get_equipment(session, equipment_id).as_document(), "mantenimientoPendiente": due}

@app.post("/equipment/{equipment_id}/sync-status")
async def sync_equipment_status(
    equipment_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    equipment = fleet.sync_operational_status(session, equipment_id)
    hub.publish("equipos")
    return equipment.as_document()

@app.delete("/equipment/{equipment_id}")
async def delete_equipment(
    equipment_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_EQUIPMENT)),
    session: Session = Depends(get_session),
):
    removed = fleet.delete_equipment(session, equipment_id)
    hub.publish("equipos", "mantenimientos", "fallas")
    return {"id": equipment_id, "ordenesEliminadas": removed}

# --- Rotas de Disponibilidade ---
@app.get("/availability")
async def read_availability(
    status: Optional[AvailabilityStatus] = None,
    user: User = Depends(require_capability(Capability.VIEW_AVAILABILITY)),
    session: Session = Depends(get_session),
):
    query = select(Equipment)
    if status is not None:
        query = query.where(Equipment.availability_status == status)
    return [e.as_document() for e in session.exec(query.order_by(Equipment.number)).all()]

@app.put("/availability/{equipment_id}")
async def update_availability(
    equipment_id: int,
    status: Annotated[str, Form()],
    reason: Annotated[str, Form()] = "",
    limitations: Annotated[str, Form()] = "",
    estimated_completion: Annotated[str, Form()] = "",
    user: User = Depends(require_capability(Capability.EDIT_AVAILABILITY)),
    session: Session = Depends(get_session),
):
    equipment = fleet.update_availability(
        session, equipment_id, status, reason=reason, limitations=limitations,
        estimated_completion=estimated_completion,
    )
    hub.publish("equipos")
    return equipment.as_document()

# --- Rotas de Manutenção ---
@app.get("/maintenance")
async def read_maintenance_list(
    type: Optional[MaintenanceType] = None,
    status: Optional[WorkOrderStatus] = None,
    equipment_id: Optional[int] = None,
    user: User = Depends(require_capability(Capability.MANAGE_MAINTENANCE)),
    session: Session = Depends(get_session),
):
    results = orders.list_work_orders(
        session, kind=WorkOrderKind.MAINTENANCE, status=status,
        maintenance_type=type, equipment_id=equipment_id,
    )
    return [orders.work_order_document(session, o) for o in results]

@app.post("/maintenance/create", status_code=201)
async def create_maintenance(
    description: Annotated[str, Form()],
    maintenance_type: Annotated[str, Form()] = MaintenanceType.PREVENTIVE.value,
    equipment_id: Annotated[Optional[int], Form()] = None,
    equipment_label: Annotated[str, Form()] = "",
    mileage: Annotated[Optional[int], Form()] = None,
    mechanic: Annotated[str, Form()] = "",
    order_date: Annotated[Optional[date], Form()] = None,
    part_ids: Annotated[List[int], Form()] = [],
    quantities: Annotated[List[int], Form()] = [],
    user: User = Depends(require_capability(Capability.MANAGE_MAINTENANCE)),
    session: Session = Depends(get_session),
):
    if len(part_ids) != len(quantities):
        raise ValidationError("Cada repuesto necesita una cantidad")
    new_order = orders.create_maintenance(
        session, user, description, maintenance_type=maintenance_type,
        equipment_id=equipment_id, equipment_label=equipment_label, mileage=mileage,
        mechanic=mechanic, order_date=order_date, parts=list(zip(part_ids, quantities)),
    )
    hub.publish("mantenimientos", "repuestos", "equipos")
    return orders.work_order_document(session, new_order)

# --- Rotas de Falhas ---
@app.get("/failures")
async def read_failures(
    status: Optional[WorkOrderStatus] = None,
    user: User = Depends(require_capability(Capability.REPORT_FAILURES)),
    session: Session = Depends(get_session),
):
    # Motoristas só veem as próprias falhas
    reporter_id = None if has_capability(user, Capability.MANAGE_FAILURES) else user.uid
    results = orders.list_work_orders(
        session, kind=WorkOrderKind.FAILURE_REPORT, status=status, reporter_id=reporter_id,
    )
    return [orders.work_order_document(session, o) for o in results]

@app.get("/failures/equipment")
async def read_reportable_equipment(
    user: User = Depends(require_capability(Capability.REPORT_FAILURES)),
    session: Session = Depends(get_session),
):
    query = select(Equipment).where(Equipment.operational_status == OperationalStatus.OPERATIONAL)
    return [e.as_document() for e in session.exec(query.order_by(Equipment.number)).all()]

@app.post("/failures/report", status_code=201)
async def report_failure(
    title: Annotated[str, Form()],
    description: Annotated[str, Form()],
    equipment_id: Annotated[int, Form()],
    priority: Annotated[str, Form()] = "media",
    user: User = Depends(require_capability(Capability.REPORT_FAILURES)),
    session: Session = Depends(get_session),
):
    report = orders.create_failure_report(session, user, title, description, equipment_id, priority)
    hub.publish("fallas")
    return orders.work_order_document(session, report)

@app.get("/fixed-records")
async def read_fixed_records(
    original_report_id: Optional[int] = None,
    user: User = Depends(require_capability(Capability.MANAGE_FAILURES)),
    session: Session = Depends(get_session),
):
    query = select(FixedRecord)
    if original_report_id is not None:
        query = query.where(FixedRecord.original_report_id == original_report_id)
    return [r.as_document() for r in session.exec(query.order_by(FixedRecord.id.desc())).all()]

# --- Rotas de Ordens ---
def _check_can_view(user: User, order: WorkOrder):
    if order.kind == WorkOrderKind.MAINTENANCE:
        allowed = has_capability(user, Capability.MANAGE_MAINTENANCE)
    else:
        allowed = has_capability(user, Capability.MANAGE_FAILURES) or order.reporter_id == user.uid
    if not allowed:
        raise PermissionDenied("No tiene permiso para ver esta orden")

def _order_collection(order: WorkOrder) -> str:
    return "fallas" if order.kind == WorkOrderKind.FAILURE_REPORT else "mantenimientos"

@app.get("/work-orders/{order_id}")
async def read_work_order(
    order_id: int,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    order = orders.get_work_order(session, order_id)
    _check_can_view(user, order)
    return orders.work_order_document(session, order)

@app.post("/work-orders/{order_id}/parts")
async def add_work_order_part(
    order_id: int,
    part_id: Annotated[int, Form()],
    quantity: Annotated[int, Form()] = 1,
    part_name: Annotated[Optional[str], Form()] = None,
    user: User = Depends(require_capability(Capability.MANAGE_MAINTENANCE)),
    session: Session = Depends(get_session),
):
    # Validações básicas
    if quantity <= 0:
        raise ValidationError("La cantidad debe ser positiva")

    stock.consume_part(session, order_id, part_id, part_name, quantity)
    order = orders.get_work_order(session, order_id)
    hub.publish(_order_collection(order), "repuestos")
    return orders.work_order_document(session, order)

@app.delete("/work-orders/{order_id}/parts/{part_id}")
async def remove_work_order_part(
    order_id: int,
    part_id: int,
    user: User = Depends(require_capability(Capability.MANAGE_MAINTENANCE)),
    session: Session = Depends(get_session),
):
    """Remove a peça da ordem e DEVOLVE ao estoque (estorno)"""
    returned = stock.release_part(session, order_id, part_id)
    order = orders.get_work_order(session, order_id)
    hub.publish(_order_collection(order), "repuestos")
    return {"orden": orders.work_order_document(session, order), "devuelto": returned}

@app.post("/work-orders/{order_id}/status")
async def change_work_order_status(
    order_id: int,
    status: Annotated[str, Form()],
    comment: Annotated[str, Form()] = "",
    user: User = Depends(require_capability(Capability.MANAGE_MAINTENANCE, Capability.MANAGE_FAILURES)),
    session: Session = Depends(get_session),
):
    order = orders.get_work_order(session, order_id)
    if order.kind == WorkOrderKind.FAILURE_REPORT and not comment:
        raise ValidationError("Por favor ingrese un comentario")

    order = transition(session, order_id, status, user, comment)
    collections = [_order_collection(order)]
    if order.equipment_id is not None:
        collections.append("equipos")
    if order.kind == WorkOrderKind.FAILURE_REPORT and order.status == WorkOrderStatus.COMPLETED:
        collections.append("arregladas")
    hub.publish(*collections)
    return orders.work_order_document(session, order)

@app.get("/work-orders/{order_id}/print", response_class=HTMLResponse)
async def print_work_order(
    order_id: int,
    request: Request,
    user: User = Depends(current_user),
    session: Session = Depends(get_session),
):
    """Rota simplificada apenas para impressão"""
    order = orders.get_work_order(session, order_id)
    _check_can_view(user, order)
    return templates.TemplateResponse(request, "print_work_order.html", {
        "order": orders.work_order_document(session, order),
    })

# --- Assinaturas ao vivo ---
async def _wait_change_or_disconnect(websocket: WebSocket, subscription) -> bool:
    """Espera uma alteração na coleção; False se o cliente desconectou."""
    change = asyncio.ensure_future(subscription.wait())
    incoming = asyncio.ensure_future(websocket.receive())
    done, pending = await asyncio.wait({change, incoming}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    if incoming in done and incoming.result()["type"] == "websocket.disconnect":
        return False
    return True

@app.websocket("/ws/{collection}")
async def subscribe_collection(websocket: WebSocket, collection: str, session: Session = Depends(get_session)):
    if collection not in SNAPSHOT_LOADERS:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    subscription = hub.subscribe(collection)
    try:
        while True:
            docs = load_snapshot(session, collection)
            # Fecha a transação de leitura para enxergar os próximos commits
            session.close()
            await websocket.send_json({"coleccion": collection, "docs": docs})
            if not await _wait_change_or_disconnect(websocket, subscription):
                break
    except WebSocketDisconnect:
        logger.debug("Cliente desconectado de %s", collection)
    finally:
        subscription.cancel()
