import importlib


def test_import_margin_guard_package() -> None:
    module = importlib.import_module("margin_guard")
    assert hasattr(module, "MarginGuardEngine")
    assert module.__version__


def test_import_emergency_package() -> None:
    module = importlib.import_module("margin_guard.emergency")
    assert hasattr(module, "EmergencyActionExecutor")
