"""Jack-in — start a local nREPL server for a project and wait for it.

Pieces, used in this order by the command layer:
  - ports:      find a free TCP port in the configured range
  - supervisor: spawn the server command, capture its output, kill it
  - discovery:  write/delete the ``.nrepl-port`` file
  - readiness:  poll until the port accepts connections
"""

from hx_nrepl.jack_in.readiness import ReadinessPoller, ReadinessState
from hx_nrepl.jack_in.supervisor import ProcessSupervisor

__all__ = ["ProcessSupervisor", "ReadinessPoller", "ReadinessState"]
