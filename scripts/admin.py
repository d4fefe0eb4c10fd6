"""Command-line wrapper around cloudadmin services.

Each sub-command runs one administrative task against Power Platform, Entra ID,
Azure Resource Manager or Azure SQL, prints the result as JSON on stdout and
emits an audit record on the ``cloudadmin.audit`` logger.
"""
from __future__ import annotations
import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

import requests

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cloudadmin.config import load_settings
from cloudadmin.core.microsoft import (
    ARM_SCOPE,
    BAP_SCOPE,
    GRAPH_SCOPE,
    ClientSecretCredential,
    CloudClient,
    GraphService,
    OperationPoller,
    PowerPlatformService,
    ResourceManagerService,
    SqlUserService,
    StaticTokenCredential,
)
from cloudadmin.core.microsoft.exceptions import CloudError, ConfigurationError
from cloudadmin.core.variables import merge, flatten, to_logging_commands

# Commands that never authenticate
OFFLINE_COMMANDS = {"export-variables"}
# Commands that change nothing and are not audited
READ_ONLY_COMMANDS = {"list-environments"}

audit_logger = logging.getLogger("cloudadmin.audit")


def log_admin_event(command: str, target: str, *, operator: str, details=None, success: bool = True) -> None:
    """Emit one JSON audit record for an administrative command."""
    record = {
        "command": command,
        "target": target,
        "operator": operator,
        "success": success,
        "details": details or {},
    }
    audit_logger.log(
        logging.INFO if success else logging.WARNING,
        "[audit] %s", json.dumps(record, sort_keys=True, default=str),
    )


def build_parser(config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Microsoft cloud admin helper")
    parser.add_argument("--tenant-id", default=config.tenant_id)
    parser.add_argument("--client-id", default=config.client_id)
    parser.add_argument("--client-secret", default=config.client_secret)
    parser.add_argument("--access-token", default=None,
                        help="Use a pre-obtained bearer token instead of the client secret")
    parser.add_argument("--operator", default="automation",
                        help="Operator identifier for audit logs (default: automation)")
    parser.add_argument("--verbose", action="store_true")

    sub = parser.add_subparsers(dest="cmd")

    ce = sub.add_parser("create-environment")
    ce.add_argument("--display-name", required=True)
    ce.add_argument("--location", default="unitedstates")
    ce.add_argument("--sku", default="Sandbox", choices=["Sandbox", "Production", "Trial", "Developer"])
    ce.add_argument("--currency", default="USD")
    ce.add_argument("--language", type=int, default=1033)
    ce.add_argument("--domain-name")
    ce.add_argument("--security-group-id")

    de = sub.add_parser("delete-environment")
    de.add_argument("--name", required=True)

    sub.add_parser("list-environments")

    er = sub.add_parser("assign-environment-roles")
    er.add_argument("--instance-url", required=True)
    who = er.add_mutually_exclusive_group(required=True)
    who.add_argument("--app-id", help="Register an application user for this app id")
    who.add_argument("--object-id", help="Entra object id of a user")
    er.add_argument("--roles", nargs="+", default=["System Administrator"])

    ea = sub.add_parser("ensure-app")
    ea.add_argument("--display-name", required=True)
    ea.add_argument("--redirect-uri", action="append", default=[])
    ea.add_argument("--service-principal", action="store_true")
    ea.add_argument("--secret-name", help="Add a client secret with this display name")
    ea.add_argument("--secret-months", type=int, default=12)

    eg = sub.add_parser("ensure-group")
    eg.add_argument("--display-name", required=True)
    eg.add_argument("--description", default="")

    gm = sub.add_parser("add-group-member")
    gm.add_argument("--group", required=True, help="Group display name")
    gm.add_argument("--member", required=True, help="User principal name or object id")

    dr = sub.add_parser("assign-directory-role")
    dr.add_argument("--principal-id", required=True)
    dr.add_argument("--role", required=True)
    dr.add_argument("--scope", default="/")

    dt = sub.add_parser("deploy-template")
    dt.add_argument("--subscription-id", default=config.subscription_id)
    dt.add_argument("--resource-group", required=True)
    dt.add_argument("--location", required=True)
    dt.add_argument("--name", required=True)
    dt.add_argument("--template", type=Path, required=True)
    dt.add_argument("--parameters", type=Path)
    dt.add_argument("--mode", default="Incremental", choices=["Incremental", "Complete"])

    drg = sub.add_parser("delete-resource-group")
    drg.add_argument("--subscription-id", default=config.subscription_id)
    drg.add_argument("--resource-group", required=True)

    su = sub.add_parser("create-sql-user")
    su.add_argument("--server", required=True)
    su.add_argument("--database", required=True)
    su.add_argument("--user", required=True, help="Entra user, group or service principal name")
    su.add_argument("--roles", nargs="*", default=["db_datareader"])

    ev = sub.add_parser("export-variables")
    ev.add_argument("files", nargs="+", type=Path, help="JSON files, later files override earlier ones")
    ev.add_argument("--separator", default=".")
    ev.add_argument("--secret-keys", nargs="*", default=[])
    ev.add_argument("--output", action="store_true", help="Mark variables as step outputs")

    return parser


def make_credential(args):
    """Build the credential handed to every client of this run."""
    if args.access_token:
        return StaticTokenCredential(args.access_token)
    return ClientSecretCredential(args.tenant_id, args.client_id, args.client_secret, authority=args.authority)


def _emit(result) -> None:
    if dataclasses.is_dataclass(result):
        result = dataclasses.asdict(result)
    elif isinstance(result, list):
        result = [dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item for item in result]
    print(json.dumps(result, indent=2, default=str))


def _read_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def run_command(args, config, credential):
    """Dispatch one sub-command and return (audit target, details, result)."""
    def poller_for(client: CloudClient) -> OperationPoller:
        return OperationPoller(
            client,
            max_attempts=config.lro_max_attempts,
            timeout=config.lro_timeout_seconds,
            default_delay=config.lro_default_delay,
        )

    def bap() -> PowerPlatformService:
        client = CloudClient(config.bap_url, credential, BAP_SCOPE, timeout=config.request_timeout)
        return PowerPlatformService(client, poller=poller_for(client))

    def graph() -> GraphService:
        return GraphService(CloudClient(config.graph_url, credential, GRAPH_SCOPE, timeout=config.request_timeout))

    def arm() -> ResourceManagerService:
        client = CloudClient(config.arm_url, credential, ARM_SCOPE, timeout=config.request_timeout)
        return ResourceManagerService(client, poller=poller_for(client))

    if args.cmd == "create-environment":
        env = bap().create_environment(
            args.display_name, args.location, sku=args.sku, currency=args.currency,
            language=args.language, domain_name=args.domain_name,
            security_group_id=args.security_group_id,
        )
        return env.name, {"display_name": args.display_name, "location": args.location, "sku": args.sku}, env

    if args.cmd == "delete-environment":
        bap().delete_environment(args.name)
        return args.name, {}, {"deleted": args.name}

    if args.cmd == "list-environments":
        return None, {}, bap().list_environments()

    if args.cmd == "assign-environment-roles":
        service = bap()
        if args.app_id:
            info = service.ensure_application_user(args.instance_url, args.app_id, args.roles)
        else:
            user_id = service.add_system_user(args.instance_url, args.object_id)
            info = service.assign_security_roles(args.instance_url, user_id, args.roles)
        return args.app_id or args.object_id, {"instance_url": args.instance_url, "roles": args.roles}, info

    if args.cmd == "ensure-app":
        service = graph()
        app = service.ensure_application(args.display_name, redirect_uris=args.redirect_uri)
        result = dataclasses.asdict(app)
        if args.service_principal:
            result["service_principal_id"] = service.ensure_service_principal(app.app_id)
        if args.secret_name:
            secret = service.add_client_secret(app.object_id, args.secret_name, months=args.secret_months)
            result["secret"] = dataclasses.asdict(secret)
        return args.display_name, {"app_id": app.app_id, "secret_added": bool(args.secret_name)}, result

    if args.cmd == "ensure-group":
        group = graph().ensure_group(args.display_name, description=args.description)
        return args.display_name, {"group_id": group.group_id}, group

    if args.cmd == "add-group-member":
        service = graph()
        group = service.get_group(args.group)
        if not group:
            raise ConfigurationError(f"Group '{args.group}' not found")
        member_id = args.member
        if "@" in member_id:
            member_id = service.get_user_id(args.member)
            if not member_id:
                raise ConfigurationError(f"User '{args.member}' not found")
        added = service.add_group_member(group.group_id, member_id)
        return args.group, {"member": args.member, "added": added}, {"group_id": group.group_id, "member_id": member_id, "added": added}

    if args.cmd == "assign-directory-role":
        assignment = graph().assign_directory_role(args.principal_id, args.role, directory_scope_id=args.scope)
        return args.principal_id, {"role": args.role, "scope": args.scope}, assignment

    if args.cmd == "deploy-template":
        if not args.subscription_id:
            raise ConfigurationError("Subscription id required (--subscription-id or AZURE_SUBSCRIPTION_ID)")
        service = arm()
        service.ensure_resource_group(args.subscription_id, args.resource_group, args.location)
        parameters = _read_json(args.parameters) if args.parameters else None
        if parameters and "parameters" in parameters and "$schema" in parameters:
            # Accept deployment parameter files as well as plain dicts
            parameters = parameters["parameters"]
        result = service.deploy_template(
            args.subscription_id, args.resource_group, args.name,
            _read_json(args.template), parameters, mode=args.mode,
        )
        return args.name, {"resource_group": args.resource_group, "state": result.provisioning_state}, result

    if args.cmd == "delete-resource-group":
        if not args.subscription_id:
            raise ConfigurationError("Subscription id required (--subscription-id or AZURE_SUBSCRIPTION_ID)")
        arm().delete_resource_group(args.subscription_id, args.resource_group)
        return args.resource_group, {}, {"deleted": args.resource_group}

    if args.cmd == "create-sql-user":
        service = SqlUserService(args.server, args.database, credential)
        statements = service.ensure_external_user(args.user, args.roles)
        return args.user, {"server": args.server, "database": args.database, "roles": args.roles}, {"statements": statements}

    raise ConfigurationError(f"Unknown command {args.cmd}")


def export_variables(args) -> None:
    document: dict = {}
    for path in args.files:
        document = merge(document, _read_json(path))
    variables = flatten(document, args.separator)
    for line in to_logging_commands(variables, secret_keys=args.secret_keys, output=args.output):
        print(line)


def main(argv=None) -> None:
    """Command-line entry point."""
    config = load_settings()
    parser = build_parser(config)
    args = parser.parse_args(argv)
    args.authority = config.authority_host

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    if not args.cmd:
        parser.print_help()
        return

    if args.cmd in OFFLINE_COMMANDS:
        export_variables(args)
        return

    if not args.access_token:
        if not args.client_secret:
            parser.error("Missing client secret (--client-secret, AZURE_CLIENT_SECRET or /run/secrets/azure_client_secret)")
        if not args.tenant_id or not args.client_id:
            parser.error("Missing --tenant-id or --client-id")

    audited = args.cmd not in READ_ONLY_COMMANDS
    try:
        credential = make_credential(args)
        target, details, result = run_command(args, config, credential)
    # ValueError covers malformed --template/--parameters JSON, OSError unreadable files
    except (CloudError, requests.RequestException, ValueError, OSError) as e:
        print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
        if audited:
            log_admin_event(args.cmd, _failed_target(args), operator=args.operator,
                            details={"error": str(e), "error_type": type(e).__name__}, success=False)
        sys.exit(1)

    if audited:
        log_admin_event(args.cmd, target, operator=args.operator, details=details, success=True)
    _emit(result)


def _failed_target(args) -> str:
    for attr in ("display_name", "name", "group", "principal_id", "resource_group", "user", "app_id", "object_id"):
        value = getattr(args, attr, None)
        if value:
            return value
    return args.cmd


if __name__ == "__main__":
    main()
