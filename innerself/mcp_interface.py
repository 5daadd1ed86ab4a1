"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
import threading
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from .services.entry_pipeline import EntryPipeline, build_pipeline
from .utils.config import config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger

logger = get_logger(__name__)

mcp = FastMCP('Inner Self')

_pipeline: Optional[EntryPipeline] = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> EntryPipeline:
    """The process-wide pipeline, built on first use."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = build_pipeline(config)
        return _pipeline


def process_entry(text: str,
                  source: str = 'text',
                  audio_url: Optional[str] = None,
                  audio_duration_sec: Optional[float] = None,
                  existing_entry_id: Optional[str] = None) -> Dict[str, Any]:
    """Save a journal entry and return its structured analysis.

    Args:
        text: The entry text
        source: 'text' or 'voice'
        audio_url: Recording the text came from, if any
        audio_duration_sec: Length of that recording in seconds
        existing_entry_id: Re-process an existing entry instead of creating one

    Returns:
        Dictionary with entryId, extraction, success, error, duplicate and diagnostics
    """
    result = get_pipeline().process_entry((text or '').strip(),
                                          source=source,
                                          audio_url=audio_url,
                                          audio_duration_sec=audio_duration_sec,
                                          existing_entry_id=existing_entry_id)

    logger.debug(f'MCP process_entry finished for {result.entry_id or "unsaved entry"}: success={result.success}')
    return {
        'entryId': result.entry_id,
        'extraction': result.extraction.to_dict() if result.extraction else None,
        'success': result.success,
        'error': result.error,
        'duplicate': result.duplicate,
        'diagnostics': [asdict(d) for d in result.diagnostics],
    }


def process_background_features(entry_id: str, text: str) -> Dict[str, Any]:
    """Extract life events, health metrics, insights, dreams and courage moments for a saved entry."""
    result = get_pipeline().process_background_features(entry_id, (text or '').strip())
    return {
        'success': result.success,
        'error': result.error,
        'diagnostics': [asdict(d) for d in result.diagnostics],
    }


def health() -> Dict[str, Any]:
    """Report whether the model, embedding and store backends respond."""
    status = get_health_status(config)
    return {'healthy': all(s.get('healthy', False) for s in status.values()), 'components': status}


for _tool in (process_entry, process_background_features, health):
    mcp.tool()(_tool)

if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
