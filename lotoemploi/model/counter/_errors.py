COUNTER_KEY = "last_ticket_code"


class CounterStoreError(RuntimeError):
    """The backing store could not read or advance the counter."""
