"""Run lifecycle and execution controls.

- `state_machine`: run states and the transitions a user may request
- `messages`: the wire contract with the external run executor
- `bridge`: sending/receiving executor messages, screenshot buffering
- `controller`: validated controls with pending flags and timeouts
"""

__all__: list[str] = []
