"""
Performance monitoring utilities
Operation timing for the order, checkout, webhook and provisioning paths
"""

import asyncio
import logging
import time
import functools
from collections import defaultdict
from typing import Dict, Any, Callable

import psutil

from services.models import iso_now

logger = logging.getLogger(__name__)

# operation name -> {'count', 'failures', 'total_ms', 'max_ms'}
_operation_stats: Dict[str, Dict[str, float]] = defaultdict(
    lambda: {'count': 0, 'failures': 0, 'total_ms': 0.0, 'max_ms': 0.0}
)

def _record(operation_name: str, duration_ms: float, failed: bool) -> None:
    stats = _operation_stats[operation_name]
    stats['count'] += 1
    stats['total_ms'] += duration_ms
    stats['max_ms'] = max(stats['max_ms'], duration_ms)
    if failed:
        stats['failures'] += 1

class OperationTimer:
    """Simple operation timer for performance monitoring"""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        duration = self.duration_ms
        _record(self.operation_name, duration, exc_type is not None)

        if exc_type is None:
            logger.info(f"⏱️ {self.operation_name}: {duration:.2f}ms")
        else:
            logger.warning(f"⏱️ {self.operation_name}: {duration:.2f}ms (failed)")

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds"""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time) * 1000
        return 0.0

def monitor_performance(operation_name: str):
    """
    Decorator to monitor function performance

    Args:
        operation_name: Name of the operation being monitored
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with OperationTimer(operation_name):
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with OperationTimer(operation_name):
                return func(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator

def get_operation_stats() -> Dict[str, Dict[str, float]]:
    """Per-operation counts and timings since process start"""
    report = {}
    for name, stats in _operation_stats.items():
        count = stats['count'] or 1
        report[name] = {
            'count': int(stats['count']),
            'failures': int(stats['failures']),
            'avg_ms': round(stats['total_ms'] / count, 2),
            'max_ms': round(stats['max_ms'], 2),
        }
    return report

def reset_operation_stats() -> None:
    _operation_stats.clear()

def get_performance_stats() -> Dict[str, Any]:
    """Get basic process statistics"""
    process = psutil.Process()
    try:
        memory_mb = process.memory_info().rss / (1024 * 1024)
    except psutil.Error as e:
        logger.warning(f"Failed to get memory usage: {e}")
        memory_mb = 0.0
    return {
        'memory_mb': round(memory_mb, 1),
        'process_id': process.pid,
        'timestamp': iso_now(),
        'operations': get_operation_stats(),
    }
