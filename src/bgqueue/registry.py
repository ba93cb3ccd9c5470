from typing import Any, Awaitable, Callable, Dict, List, Union

from bgqueue.errors import UnknownJobType

Handler = Callable[[bytes], Union[None, Any, Awaitable[Any]]]


class HandlerRegistry:
    """
    Maps job types to the callables that perform them.

    A handler takes the task payload (bytes). It may be a plain function or a coroutine
    function; raising any exception marks the attempt as failed.
    """
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    @property
    def job_types(self) -> List[str]:
        return list(self._handlers.keys())

    def register_handler(self, job_type: str, handler: Handler) -> None:
        """
        Register a handler for a job type.

        Args:
            job_type (str): The job type the handler performs.
            handler (Handler): Callable receiving the payload bytes.
        """
        if not isinstance(job_type, str) or not job_type.strip():
            raise ValueError("job_type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for job type '{job_type}' is not callable")
        if job_type in self._handlers:
            raise ValueError(f"A handler for job type '{job_type}' is already registered")
        self._handlers[job_type] = handler

    def handler(self, job_type: str) -> Callable[[Handler], Handler]:
        """
        Decorator form of register_handler::

            @registry.handler("send_email")
            async def send_email(payload: bytes) -> None:
                ...
        """
        def decorator(fn: Handler) -> Handler:
            self.register_handler(job_type, fn)
            return fn
        return decorator

    def resolve(self, job_type: str) -> Handler:
        """
        Get the handler for a job type.

        Raises:
            UnknownJobType: If nothing is registered for job_type.
        """
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobType(job_type) from None

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers
