from importlib import import_module

__all__ = [
    "RadarService",
    "RadarState",
    "RadarRepository",
    "ScanPipeline",
    "BatchRunner",
    "MonitorEngine",
    "ReevalPlanner",
    "ReevalExecutor",
]

_LAZY_EXPORTS = {
    "RadarService": ("services.radar", "RadarService"),
    "RadarState": ("services.radar_state", "RadarState"),
    "RadarRepository": ("services.persistence", "RadarRepository"),
    "ScanPipeline": ("services.scan_pipeline", "ScanPipeline"),
    "BatchRunner": ("services.batch_runner", "BatchRunner"),
    "MonitorEngine": ("services.monitor", "MonitorEngine"),
    "ReevalPlanner": ("services.reeval", "ReevalPlanner"),
    "ReevalExecutor": ("services.reeval", "ReevalExecutor"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
