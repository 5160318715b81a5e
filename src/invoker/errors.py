from __future__ import annotations


class InvokerError(RuntimeError):
    pass


class ConfigValidationError(InvokerError):
    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("invalid run args: " + "; ".join(self.problems))


class PortInUse(ConfigValidationError):
    def __init__(self, port: int, reason: str) -> None:
        self.port = port
        super().__init__([f"port {port} is already in use ({reason})"])


class HostNotInList(InvokerError):
    """This node is not part of the job's host list; callers exit 0."""

    def __init__(self, hosts: list[str], addresses: list[str]) -> None:
        self.hosts = list(hosts)
        self.addresses = list(addresses)
        super().__init__(f"none of {self.addresses} found in hosts list {self.hosts}, omitting")


class ContainerNotFound(InvokerError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"container {name} not found")


class RuntimeQueryError(InvokerError):
    pass


class StateStoreIO(InvokerError):
    pass


class NotFound(InvokerError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class ReconciliationConflict(InvokerError):
    def __init__(self, job: str, hosts: list[str]) -> None:
        self.job = job
        self.hosts = list(hosts)
        super().__init__(f"run args are not equal for {job} across hosts {self.hosts}")
