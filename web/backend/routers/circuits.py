#!/usr/bin/env python3
"""
Circuit breaker endpoints - view and manually reset per-sink breakers.
"""

from fastapi import APIRouter, Depends

from notifier.circuit_breaker import CircuitBreakerRegistry, CircuitState
from ..dependencies import get_breakers
from ..exceptions import CircuitNotFoundException
from ..models.responses import (
    CircuitListResponse,
    CircuitResetResponse,
    CircuitStatusResponse,
)

router = APIRouter(prefix="/api/circuits", tags=["circuits"])


@router.get("", response_model=CircuitListResponse)
def list_circuits(breakers: CircuitBreakerRegistry = Depends(get_breakers)):
    """All breakers created so far."""
    circuits = breakers.status_all()
    return CircuitListResponse(
        circuits=circuits,
        open_circuits=[n for n, s in circuits.items() if s['state'] == CircuitState.OPEN.value],
    )


@router.get("/{name}", response_model=CircuitStatusResponse)
def get_circuit(name: str, breakers: CircuitBreakerRegistry = Depends(get_breakers)):
    status = breakers.status(name)
    if status is None:
        raise CircuitNotFoundException(f"No circuit breaker for sink '{name}'")
    return CircuitStatusResponse(circuit=status)


@router.post("/{name}/reset", response_model=CircuitResetResponse)
def reset_circuit(name: str, breakers: CircuitBreakerRegistry = Depends(get_breakers)):
    """Force a breaker back to closed."""
    if not breakers.reset(name):
        raise CircuitNotFoundException(f"No circuit breaker for sink '{name}'")
    return CircuitResetResponse(name=name, message=f"Circuit breaker reset for {name}")
