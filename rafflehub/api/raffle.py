import asyncio
from typing import List, Optional

from fastapi import (
    APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, WebSocket, WebSocketDisconnect,
)
from loguru import logger

from rafflehub.api.dependencies import get_context, get_current_user, get_optional_user
from rafflehub.api.schemas import (
    CreateRaffleResponse,
    DrawResponse,
    PurchaseRequest,
    PurchaseResponse,
    QuoteResponse,
)
from rafflehub.context import AppContext
from rafflehub.records import Payer, RaffleRecord
from rafflehub.services.admission_service import STORE_ERRORS, EntryNotRecordedError, RaffleClosedError
from rafflehub.services.auth_service import CurrentUser
from rafflehub.services.draw_service import (
    AlreadyDrawnError,
    DrawForbiddenError,
    DrawPersistenceFailedError,
    NoEntriesError,
    RaffleNotFoundError,
    RandomnessUnavailableError,
)
from rafflehub.services.payment_service import (
    GatewayUnavailableError,
    PaymentCancelledError,
    PaymentDeclinedError,
    format_amount,
    quote,
)
from rafflehub.services.projection import RaffleDetail, RaffleSummary, active_summaries, detail
from rafflehub.services.purchase_service import PurchaseStatus
from rafflehub.services.raffle_service import RaffleValidationError
from rafflehub.services.storage_service import StorageError

router = APIRouter(prefix="/raffles", tags=["raffle"])


async def load_snapshot(context: AppContext) -> List[RaffleRecord]:
    """Fresh collection, or the last one the feed delivered if the store is down"""
    try:
        return await context.store.list_raffles()
    except STORE_ERRORS as e:
        logger.warning(f"Serving last known raffle list, store unavailable: {e}")
        return context.view_state.snapshot


@router.get("", response_model=List[RaffleSummary])
async def list_raffles(context: AppContext = Depends(get_context)):
    """All raffles, newest first"""
    return active_summaries(await load_snapshot(context))


@router.post("", response_model=CreateRaffleResponse, status_code=201)
async def create_raffle(
    name: str = Form(...),
    ticket_price: str = Form(...),
    description: str = Form(""),
    image: Optional[UploadFile] = File(None),
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """
    Create a raffle
    Requires a name, a positive ticket price and a cover image
    """
    profile = await context.auth.get_profile(user)
    image_bytes = await image.read() if image else None

    try:
        raffle_id = await context.raffles.create_raffle(
            creator_id=user.id,
            creator_profile=profile,
            name=name,
            description=description,
            ticket_price=ticket_price,
            image=image_bytes,
            image_filename=image.filename if image else "image",
        )
    except RaffleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return CreateRaffleResponse(id=raffle_id)


@router.websocket("/live")
async def raffles_live(websocket: WebSocket):
    """Push the sorted raffle list on connect and after every change"""
    context: AppContext = websocket.app.state.context
    await websocket.accept()
    subscription = await context.store.subscribe()

    async def pump():
        async for snapshot in subscription:
            await websocket.send_json([
                summary.model_dump(mode="json") for summary in active_summaries(snapshot)
            ])

    pump_task = asyncio.create_task(pump())
    try:
        # Client messages are ignored, reading only detects disconnects
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Live raffle client disconnected")
    finally:
        subscription.close()
        pump_task.cancel()
        try:
            await pump_task
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass


@router.get("/{raffle_id}", response_model=RaffleDetail)
async def get_raffle(
    raffle_id: str,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    context: AppContext = Depends(get_context),
):
    view = detail(await load_snapshot(context), raffle_id, user.id if user else None)
    if view is None:
        raise HTTPException(status_code=404, detail="Raffle not found")
    return view


@router.get("/{raffle_id}/quote", response_model=QuoteResponse)
async def get_quote(raffle_id: str, context: AppContext = Depends(get_context)):
    """Ticket price, platform fee and total to pay"""
    try:
        raffle = await context.store.get(raffle_id)
    except STORE_ERRORS as e:
        logger.warning(f"Quoting raffle {raffle_id} from last known list, store unavailable: {e}")
        raffle = next((r for r in context.view_state.snapshot if r.id == raffle_id), None)
    if raffle is None:
        raise HTTPException(status_code=404, detail="Raffle not found")
    return QuoteResponse(**quote(raffle.ticket_price))


@router.post("/{raffle_id}/purchase", response_model=PurchaseResponse, status_code=201)
async def purchase_ticket(
    raffle_id: str,
    request: PurchaseRequest,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """
    Pay for a ticket and enter the raffle
    Responds 202 when the payment went through but the entry could not be saved,
    or when the payment state is not known yet. Repeat the request with the
    returned idempotence_key to resume it without a second charge.
    """
    payer = Payer(user_id=user.id, name=user.email)

    try:
        outcome = await context.purchases.purchase(
            raffle_id, payer, request.payment_token, idempotence_key=request.idempotence_key,
        )
    except RaffleClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except EntryNotRecordedError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (PaymentDeclinedError, PaymentCancelledError) as e:
        raise HTTPException(status_code=402, detail=str(e))
    except GatewayUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if outcome.status != PurchaseStatus.ENTERED:
        response.status_code = 202

    receipt = outcome.receipt
    return PurchaseResponse(
        status=outcome.status.value,
        message=outcome.message,
        idempotence_key=outcome.idempotence_key,
        payment_id=receipt.payment_id if receipt else None,
        amount_charged=format_amount(receipt.amount) if receipt else None,
        entry=outcome.entry,
    )


@router.post("/{raffle_id}/draw", response_model=DrawResponse)
async def draw_winner(
    raffle_id: str,
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """Draw the winner, creator only"""
    try:
        winner = await context.draws.draw_winner(raffle_id, user.id)
    except RaffleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DrawForbiddenError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except (AlreadyDrawnError, NoEntriesError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RandomnessUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except DrawPersistenceFailedError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return DrawResponse(winner=winner)


@router.delete("/{raffle_id}", status_code=204)
async def delete_raffle(
    raffle_id: str,
    user: CurrentUser = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    """Delete the raffle, creator only, in any state"""
    try:
        await context.draws.delete_raffle(raffle_id, user.id)
    except RaffleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DrawForbiddenError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except DrawPersistenceFailedError as e:
        raise HTTPException(status_code=500, detail=str(e))
