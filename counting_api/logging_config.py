import logging
import os
import opentelemetry.trace
from azure.monitor.opentelemetry import configure_azure_monitor

# Attributes every LogRecord has; anything else on a record came in through ``extra=``
_RECORD_ATTRIBUTES = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

# Only export to Application Insights inside Azure Functions (FUNCTIONS_WORKER_RUNTIME is set there)
if os.environ.get("FUNCTIONS_WORKER_RUNTIME"):
    try:
        configure_azure_monitor(logger_name="counting_api")
        logging.info("Azure Monitor OpenTelemetry configured successfully")
    except Exception as e:
        logging.error(f"Error configuring Azure Monitor: {str(e)}")

tracer = opentelemetry.trace.get_tracer("counting_api")


class ContextFormatter(logging.Formatter):
    """Console formatter that appends the structured context passed via ``extra=``."""

    def format(self, record):
        line = super().format(record)
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        if context:
            line += " | " + " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return line


logger = logging.getLogger("counting_api")
logger.setLevel(os.environ.get("COUNTING_LOG_LEVEL", "INFO").upper())

if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        ContextFormatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )
    logger.addHandler(console_handler)


def get_child_logger(name):
    """Get a child logger with the given name."""
    return logger.getChild(name)
