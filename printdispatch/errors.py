"""
Exception hierarchy for the dispatcher, the job store and job executors
"""


class DispatchError(Exception):
    """Base exception for dispatcher and store errors"""
    pass


class ValidationError(DispatchError):
    """Raised when input validation fails"""
    pass


class JobNotFoundError(DispatchError):
    """Raised when a job id does not exist"""
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class PrinterNotFoundError(DispatchError):
    """Raised when a printer record does not exist"""
    def __init__(self, printer_id):
        self.printer_id = printer_id
        super().__init__(f"Printer '{printer_id}' not found")


class PrinterInUseError(DispatchError):
    """Raised when a printer still has jobs and deleting them was not requested"""
    def __init__(self, job_counts):
        self.job_counts = job_counts
        details = ", ".join(f"{pid}: {count} jobs" for pid, count in job_counts.items())
        super().__init__(f"Cannot delete printer while jobs remain ({details})")


class SchedulerNotRunningError(DispatchError):
    """Raised when the dispatcher is used after stop()"""
    pass


# ============================================================================
# EXECUTOR ERRORS
# ============================================================================

class JobExecutionError(Exception):
    """Base exception raised by job executors"""
    pass


class PrinterBusyError(JobExecutionError):
    """Another process holds the device"""
    pass


class NetworkError(JobExecutionError):
    """Timeout or unreachable host"""
    pass


class HardwareError(JobExecutionError):
    """Device absent or permission denied"""
    pass


class ConnectionFailedError(JobExecutionError):
    """Generic connect failure"""
    pass


class TaskTimeoutError(JobExecutionError):
    """Executor did not finish within the per-job timeout"""
    def __init__(self, job_id, timeout):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"TASK_TIMEOUT: job {job_id} exceeded {timeout:.1f}s")
