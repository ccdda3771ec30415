from .run_logging import RunLoggingInstrument, get_run_logging_instrument

__all__ = [
    "RunLoggingInstrument",
    "get_run_logging_instrument",
]
