"""Utilities for handling KeyboardInterrupt in worker threads.

KeyboardInterrupt is only delivered to the main thread. Build pipelines run
in a thread pool, so an interrupt seen by a worker must be forwarded to the
main thread, and an interrupt seen by the main thread must cancel the workers.
"""

import _thread
import threading


def handle_keyboard_interrupt_properly(ke: KeyboardInterrupt) -> None:
    """Handle KeyboardInterrupt by propagating it to the main thread.

    Usage:
        try:
            run_pipeline()
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke)

    Args:
        ke: The KeyboardInterrupt exception to handle

    Raises:
        KeyboardInterrupt: Always re-raises the exception after handling
    """
    if threading.current_thread() is not threading.main_thread():
        _thread.interrupt_main()
    raise ke


def cancel_on_interrupt(cancel_event: threading.Event, ke: KeyboardInterrupt) -> None:
    """Signal running pipelines to stop, then re-raise the interrupt.

    Args:
        cancel_event: Event polled by the pipelines
        ke: The KeyboardInterrupt being handled

    Raises:
        KeyboardInterrupt: Always
    """
    cancel_event.set()
    raise ke
