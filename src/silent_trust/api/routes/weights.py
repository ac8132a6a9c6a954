"""
Weight set API routes.

View, replace, retrain or reset the per-factor weights.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from silent_trust.api.deps import Services
from silent_trust.db.gateway import PersistenceError
from silent_trust.scoring.weights import InvalidWeightSet, TrainingError

router = APIRouter()


class WeightsRequest(BaseModel):
    fingerprint: int
    behavior: int
    ip: int
    frequency: int


class TrainRequest(BaseModel):
    sample_size: int = Field(default=500, ge=1, le=10000)
    min_required: int = Field(default=100, ge=1)


@router.get("")
async def get_weights(services: Services) -> dict[str, Any]:
    try:
        info = await services.weight_store.get_training_info()
        info["can_train"] = await services.weight_store.can_train()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return info


@router.put("")
async def save_weights(body: WeightsRequest, services: Services) -> dict[str, Any]:
    try:
        weights = await services.weight_store.save_weights(body.model_dump())
    except InvalidWeightSet as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return {"weights": weights.as_dict(), "trained_at": weights.trained_at.isoformat()}


@router.post("/train")
async def train_weights(body: TrainRequest, services: Services) -> dict[str, Any]:
    try:
        result = await services.weight_store.train(body.sample_size, body.min_required)
    except TrainingError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return result.to_dict()


@router.post("/reset")
async def reset_weights(services: Services) -> dict[str, Any]:
    try:
        await services.weight_store.reset_to_defaults()
        return await services.weight_store.get_training_info()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
