"""
QuickMark Errors
Exception hierarchy for a single benchmark attempt and the result store.
"""

from typing import Optional


class QuickMarkError(Exception):
    """Base class for all QuickMark failures"""


class AuthFailure(QuickMarkError):
    """SiliconMark login returned no usable token"""


class JobCreationFailure(QuickMarkError):
    """SiliconMark job creation returned no job token"""


class NoOfferFound(QuickMarkError):
    """No rentable Vast.ai offer exists for the machine"""

    def __init__(self, machine_id: int):
        self.machine_id = machine_id
        super().__init__(f"No rentable offers found for machine {machine_id}")


class InstanceCreationFailure(QuickMarkError):
    """Vast.ai refused to create the instance or returned no contract id"""


class ProvisionTimeout(QuickMarkError):
    """Instance did not reach the running state in time"""

    def __init__(self, instance_id: int, timeout: int):
        self.instance_id = instance_id
        self.timeout = timeout
        super().__init__(f"Instance {instance_id} not running after {timeout}s")


class BenchmarkTimeout(QuickMarkError):
    """Benchmark agent did not finish in time"""

    def __init__(self, instance_id: int, timeout: int):
        self.instance_id = instance_id
        self.timeout = timeout
        super().__init__(f"Benchmark on instance {instance_id} did not complete within {timeout}s")


class BenchmarkFailure(QuickMarkError):
    """Instance or agent terminated unsuccessfully"""


class MalformedResult(QuickMarkError):
    """Agent output did not contain a parseable result object"""

    def __init__(self, message: str, raw_output_path: Optional[str] = None):
        self.raw_output_path = raw_output_path
        super().__init__(message)


class CorruptStore(QuickMarkError):
    """Result store exists but is not a JSON array"""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Result store {path} is corrupt: {reason}")


class TeardownFailure(QuickMarkError):
    """Instance could not be destroyed; needs manual cleanup"""

    def __init__(self, instance_id: int, cause: Optional[Exception] = None):
        self.instance_id = instance_id
        self.cause = cause
        message = f"Failed to destroy instance {instance_id}"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message)
