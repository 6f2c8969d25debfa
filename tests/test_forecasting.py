import asyncio

import pytest

from margin_guard.config.models import ForecastConfig
from margin_guard.events import EventDispatcher, ForecastUpdated
from margin_guard.forecasting import ForecastEngine, algorithms, forecast_risk_level, is_sustained_decline
from margin_guard.models import MarginSample, RiskLevel, TrendDirection
from margin_guard.monitoring import MarginSampleStore


def _store_with(levels, account_id="acct-1", used=1000.0):
    store = MarginSampleStore()
    for index, level in enumerate(levels):
        store.record(
            account_id,
            MarginSample(
                timestamp=float(index * 300),
                margin_level=level,
                equity=used * level / 100,
                free_margin=0.0,
                used_margin=used,
            ),
        )
    return store


def _engine(levels, **config):
    dispatcher = EventDispatcher()
    engine = ForecastEngine(
        _store_with(levels), dispatcher, config=ForecastConfig(**config), clock=lambda: 10_000.0
    )
    return engine, dispatcher


def test_estimators_return_neutral_prediction_without_enough_data():
    assert algorithms.moving_average([100.0, 99.0]) == algorithms.Prediction(0.0, 0.0, algorithms.MOVING_AVERAGE)
    assert algorithms.exponential_moving_average([100.0]).confidence == 0.0
    assert algorithms.linear_extrapolation([100.0, 99.0]).confidence == 0.0
    assert algorithms.polynomial_extrapolation([1.0, 2.0, 3.0, 4.0]).confidence == 0.0
    assert algorithms.arima_like([float(v) for v in range(9)]).confidence == 0.0
    assert algorithms.ensemble([]).confidence == 0.0
    assert algorithms.volatility([5.0]) == 0.0


def test_linear_regression_recovers_exact_line():
    fit = algorithms.linear_regression([10.0, 8.0, 6.0, 4.0])

    assert fit.slope == pytest.approx(-2.0)
    assert fit.intercept == pytest.approx(10.0)
    assert fit.r2 == pytest.approx(1.0)


def test_linear_extrapolation_steps_by_sample_interval():
    prediction = algorithms.linear_extrapolation([10.0, 8.0, 6.0, 4.0], 10, sample_interval_minutes=5)

    # x = 4 + 10 / 5 = 6
    assert prediction.prediction == pytest.approx(-2.0)
    assert prediction.confidence == pytest.approx(1.0)


def test_arima_like_uses_recent_differences():
    values = [200.0 - 2 * index for index in range(12)]

    prediction = algorithms.arima_like(values, 10, sample_interval_minutes=5)

    assert prediction.prediction == pytest.approx(values[-1] - 4.0)
    assert prediction.confidence == pytest.approx(1.0)


def test_ensemble_weights_only_confident_methods():
    values = [100.0, 100.0, 100.0, 100.0, 100.0, 100.0]

    result = algorithms.ensemble(values, 30)

    assert result.method == algorithms.ENSEMBLE
    assert result.prediction == pytest.approx(100.0)
    assert 0.0 < result.confidence <= 1.0


def test_run_all_covers_every_estimator():
    results = algorithms.run_all([float(250 - i) for i in range(12)])

    assert set(results) == set(algorithms.ESTIMATORS)


def test_forecast_risk_level_uses_countdown():
    assert forecast_risk_level(40, None) is RiskLevel.CRITICAL
    assert forecast_risk_level(300, 20) is RiskLevel.DANGER
    assert forecast_risk_level(300, 45) is RiskLevel.WARNING
    assert forecast_risk_level(300, None) is RiskLevel.SAFE


def test_is_sustained_decline():
    assert is_sustained_decline([10.0, 9.0, 9.0, 8.0], 4)
    assert not is_sustained_decline([10.0, 9.0, 9.5, 8.0], 4)
    assert not is_sustained_decline([10.0, 10.0, 10.0, 10.0], 4)
    assert not is_sustained_decline([10.0, 9.0], 4)


@pytest.mark.parametrize(
    "start, step, count",
    [
        (1000.0, 1.0, 10),
        (600.0, 20.0, 12),
        (250.0, 15.0, 15),
        (180.0, 0.5, 30),
        (120.0, 8.0, 11),
    ],
)
def test_monotonic_decline_is_forecast_as_danger_or_worse(start, step, count):
    levels = [start - step * index for index in range(count)]
    engine, _ = _engine(levels)

    forecast = engine.compute_forecast("acct-1")

    assert forecast is not None
    assert forecast.risk_level in (RiskLevel.DANGER, RiskLevel.CRITICAL)


def test_forecast_requires_minimum_samples():
    engine, _ = _engine([200.0, 190.0, 180.0])

    assert engine.compute_forecast("acct-1") is None
    assert engine.update("acct-1") is None


def test_confident_decline_produces_loss_cut_countdown():
    levels = [250.0 - 5 * index for index in range(20)]
    engine, _ = _engine(levels)

    forecast = engine.compute_forecast("acct-1")

    assert forecast.trend_direction is TrendDirection.DETERIORATING
    assert forecast.confidence_level > 0.7
    # 5 points per 5-minute sample, from 155% down to the 20% loss-cut.
    assert forecast.time_to_loss_cut_minutes == pytest.approx(135.0)
    assert forecast.predicted_loss_cut_time == pytest.approx(10_000.0 + 135.0 * 60)
    assert forecast.required_recovery_amount == pytest.approx(450.0)
    assert forecast.early_warnings


def test_update_publishes_forecast_and_keeps_latest():
    engine, dispatcher = _engine([220.0, 221.0, 220.0, 219.0, 220.0])

    forecast = engine.update("acct-1")

    assert engine.latest("acct-1") is forecast
    events = dispatcher.history(ForecastUpdated.kind)
    assert len(events) == 1
    assert events[0].payload["account_id"] == "acct-1"


def test_critical_warnings_name_their_account_critical_first():
    store = _store_with([220.0] * 5)
    for account_id, level in (("acct-3", 95.0), ("acct-2", 48.0)):
        for index in range(5):
            store.record(
                account_id,
                MarginSample(
                    timestamp=float(index * 300),
                    margin_level=level,
                    equity=level * 10,
                    free_margin=0.0,
                    used_margin=1000.0,
                ),
            )
    engine = ForecastEngine(store, EventDispatcher(), clock=lambda: 10_000.0)
    engine.recompute_all()

    warnings = engine.critical_warnings()

    assert [(account_id, warning.level) for account_id, warning in warnings] == [
        ("acct-2", RiskLevel.CRITICAL),
        ("acct-3", RiskLevel.DANGER),
    ]
    assert len(engine.method_breakdown("acct-1", 15)) == 7


def test_stable_series_reports_stable_trend():
    engine, _ = _engine([220.0, 220.0, 220.0, 220.0, 220.0])

    trend = engine.analyze_trend("acct-1")

    assert trend.direction is TrendDirection.STABLE
    assert trend.slope == pytest.approx(0.0)


def test_predict_rejects_unknown_method():
    engine, _ = _engine([220.0] * 5)

    with pytest.raises(ValueError):
        engine.predict("acct-1", 30, method="crystal_ball")


def test_record_outcome_scores_predictions():
    levels = [250.0 - 5 * index for index in range(20)]
    engine, _ = _engine(levels)
    forecast = engine.update("acct-1")

    stats = engine.record_outcome("acct-1", actual_loss_cut_time=forecast.predicted_loss_cut_time + 600)

    assert stats.total_predictions == 1
    assert stats.accurate_predictions == 1
    assert stats.average_lead_time_minutes == pytest.approx(10.0)
    assert engine.record_outcome("unknown", actual_loss_cut_time=None).total_predictions == 1


def test_background_recompute_can_start_and_stop():
    engine, dispatcher = _engine([220.0, 210.0, 200.0, 190.0, 180.0], update_interval_ms=5)

    async def scenario():
        engine.start()
        await asyncio.sleep(0.05)
        await engine.stop()

    asyncio.run(scenario())

    assert dispatcher.history(ForecastUpdated.kind)
