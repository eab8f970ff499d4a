"""
Default middleware for localchat.

Call install_defaults() at startup to register all built-in hooks.
"""

from localchat.middleware import logging_hook, metrics_hook


def install_defaults(log_path=None, run_context=None):
    """Register the JSONL logger and the metrics collector.

    Args:
        log_path: Path for the JSONL event log (optional; see logging_hook.init_logging).
        run_context: Fields stamped onto every log record (model, working_directory).

    Returns:
        Dict with references to installed components (e.g. metrics collector).
    """
    logging_hook.install(log_path=log_path, run_context=run_context or {})
    collector = metrics_hook.install()

    return {
        "metrics": collector,
    }
