# bhnbody/bhsim/utils.py
"""General utility functions for the simulation backend."""

import functools
import importlib
import time


# set from the 'print_timings' setting by the simulator
_timing_enabled = False


def set_timing_enabled(enabled: bool):
    """Turns the timing_decorator output on or off."""
    global _timing_enabled
    _timing_enabled = bool(enabled)


def timing_decorator(func):
    """Decorator to print the execution time of a function (useful for debugging)."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if not _timing_enabled:
            return func(*args, **kwargs)
        start_time = time.perf_counter()
        result = func(*args, **kwargs)
        end_time = time.perf_counter()
        print(f"Timing: {func.__name__:<25} executed in {(end_time - start_time) * 1000:.3f} ms")
        return result
    return wrapper


def dynamic_import(module_name, class_name):
    """Dynamically imports a class from a specified module."""
    try:
        module = importlib.import_module(module_name)
        return getattr(module, class_name)
    except ImportError:
        print(f"ERROR: Module '{module_name}' not found.")
        raise
    except AttributeError:
        print(f"ERROR: Class '{class_name}' not found in module '{module_name}'.")
        raise
