"""FastAPI application exposing margin guard state and emergency controls."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .engine import MarginGuardEngine
from .models import AccountMarginInfo, MarginValidationError, isoformat

logger = logging.getLogger(__name__)


def create_app(engine: MarginGuardEngine, *, accounts: Optional[Iterable[str]] = None) -> FastAPI:
    """Build the API around ``engine``.

    When ``accounts`` is given the engine starts polling them on application
    startup and is stopped again on shutdown.
    """

    app = FastAPI(title="Margin Guard")
    app.state.engine = engine
    app.state.accounts = list(accounts) if accounts is not None else None

    def get_engine(request: Request) -> MarginGuardEngine:
        return request.app.state.engine

    def _require_state(engine: MarginGuardEngine, account_id: str):
        state = engine.state_manager.get_state(account_id)
        if state is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Account '{account_id}' not found",
            )
        return state

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - FastAPI lifecycle
        if app.state.accounts:
            await app.state.engine.start(app.state.accounts)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - FastAPI lifecycle
        if app.state.accounts:
            await app.state.engine.stop()

    @app.get("/health", response_class=JSONResponse)
    async def health(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        monitoring = engine.state_manager.monitoring_status()
        payload: Dict[str, Any] = {
            "status": "degraded" if monitoring["errors"] else "ok",
            "monitoring": monitoring,
            "emergency_mode_active": engine.mode.is_active,
            "channels": engine.telemetry.health_snapshot(),
        }
        return JSONResponse(payload)

    @app.get("/api/accounts", response_class=JSONResponse)
    async def api_accounts(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        states = engine.state_manager.all_states()
        return JSONResponse(
            {
                "accounts": [state.to_payload() for _, state in sorted(states.items())],
                "statistics": engine.state_manager.statistics(),
            }
        )

    @app.post("/api/margin", response_class=JSONResponse)
    async def api_ingest(request: Request, engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")
        try:
            info = AccountMarginInfo.from_mapping(payload).validate()
        except MarginValidationError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        events = engine.ingest(info)
        state = engine.state_manager.get_state(info.account_id)
        return JSONResponse(
            {
                "accepted": state is not None and state.last_update == info.last_update,
                "events": [event.kind for event in events],
                "state": state.to_payload() if state is not None else None,
            }
        )

    @app.get("/api/accounts/{account_id}", response_class=JSONResponse)
    async def api_account(account_id: str, engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        state = _require_state(engine, account_id)
        return JSONResponse(
            {
                "state": state.to_payload(),
                "trend": engine.monitor.trend_direction(account_id).value,
                "alerts": [alert.to_payload() for alert in engine.state_manager.alerts(account_id)],
            }
        )

    @app.get("/api/accounts/{account_id}/forecast", response_class=JSONResponse)
    async def api_forecast(
        account_id: str,
        minutes_ahead: float = 30,
        engine: MarginGuardEngine = Depends(get_engine),
    ) -> JSONResponse:
        _require_state(engine, account_id)
        if minutes_ahead <= 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="minutes_ahead must be positive")
        forecast = engine.forecast.latest(account_id) or engine.forecast.update(account_id)
        if forecast is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Not enough samples to forecast account '{account_id}'",
            )
        payload = forecast.to_payload()
        payload["methods"] = {
            name: {"prediction": round(prediction.prediction, 4), "confidence": round(prediction.confidence, 4)}
            for name, prediction in engine.forecast.method_breakdown(account_id, minutes_ahead).items()
        }
        return JSONResponse(payload)

    @app.get("/api/forecasts/warnings", response_class=JSONResponse)
    async def api_forecast_warnings(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        return JSONResponse(
            {
                "warnings": [
                    {
                        "account_id": account_id,
                        "level": warning.level.value,
                        "message": warning.message,
                        "time_to_threshold_minutes": warning.time_to_threshold_minutes,
                    }
                    for account_id, warning in engine.forecast.critical_warnings()
                ]
            }
        )

    @app.get("/api/accounts/{account_id}/recovery", response_class=JSONResponse)
    async def api_recovery(
        account_id: str,
        target: Optional[float] = None,
        engine: MarginGuardEngine = Depends(get_engine),
    ) -> JSONResponse:
        _require_state(engine, account_id)
        if target is not None and target <= 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="target must be positive")
        return JSONResponse(engine.recovery_plan(account_id, target=target).to_payload())

    @app.get("/api/emergency/mode", response_class=JSONResponse)
    async def api_emergency_mode(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        return JSONResponse(engine.mode.status())

    @app.post("/api/emergency/mode/recovery-actions", response_class=JSONResponse)
    async def api_run_recovery_actions(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        succeeded = await engine.mode.execute_all_recovery_actions()
        return JSONResponse({"succeeded": succeeded, "state": engine.mode.status()})

    @app.post("/api/emergency/mode/recovery-actions/{action_id}", response_class=JSONResponse)
    async def api_run_recovery_action(action_id: str, engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        try:
            succeeded = await engine.mode.execute_recovery_action(action_id)
        except KeyError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Recovery action '{action_id}' not found",
            ) from None
        except RuntimeError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        logger.info("Recovery action %s run through the API: %s", action_id, succeeded)
        return JSONResponse({"action_id": action_id, "succeeded": succeeded, "state": engine.mode.status()})

    @app.post("/api/emergency/mode/deactivate", response_class=JSONResponse)
    async def api_deactivate(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        if not engine.mode.is_active:
            return JSONResponse({"deactivated": False, "reason": "emergency mode is not active"})
        if not engine.mode.deactivate("manual"):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Required recovery actions have not completed",
            )
        logger.info("Emergency mode deactivated through the API")
        return JSONResponse({"deactivated": True, "state": engine.mode.status()})

    @app.get("/api/emergency/responses", response_class=JSONResponse)
    async def api_responses(engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        return JSONResponse(
            {
                "active": [response.to_payload() for response in engine.executor.active_responses()],
                "history": [response.to_payload() for response in engine.executor.history()],
            }
        )

    @app.get("/api/emergency/responses/{response_id}/report", response_class=JSONResponse)
    async def api_response_report(response_id: str, engine: MarginGuardEngine = Depends(get_engine)) -> JSONResponse:
        try:
            report = engine.analyzer.generate_detailed_report(response_id)
        except KeyError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No measurement for response '{response_id}'",
            ) from None
        return JSONResponse({"response_id": response_id, "report": report})

    @app.get("/api/analysis/performance", response_class=JSONResponse)
    async def api_performance(
        window_hours: float = 24,
        engine: MarginGuardEngine = Depends(get_engine),
    ) -> JSONResponse:
        if window_hours <= 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="window_hours must be positive")
        metrics = engine.analyzer.analyze_performance(window_hours)
        return JSONResponse(
            {
                "generated_at": isoformat(engine.now()),
                "performance": metrics.to_payload(),
                "prediction_metrics": engine.forecast.prediction_metrics().to_payload(),
            }
        )

    return app


__all__ = ["create_app"]
