"""Administrative tooling for Microsoft cloud control-plane APIs.

To use the API clients:
    from cloudadmin.core.microsoft import ClientSecretCredential, CloudClient, GraphService

To export pipeline variables:
    from cloudadmin.core.variables import flatten, to_logging_commands
"""
