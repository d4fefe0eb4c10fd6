"""Core administrative logic, independent of the command-line surface.

Module Structure:
    - microsoft/     : Credentials, HTTP client, operation poller and per-API services
    - variables.py   : Deep merge and pipeline variable export

Import explicitly when needed:
    from cloudadmin.core.microsoft import PowerPlatformService, OperationPoller
    from cloudadmin.core.variables import merge, flatten
"""
