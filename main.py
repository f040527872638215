from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Callable

from graph_admin.audit import JsonAuditLogger
from graph_admin.config import AdminConfig
from graph_admin.operations import TenantOperations
from graph_admin.tenant_manager import TenantManager

OPERATIONS = [
    "list-users",
    "add-group-owners",
    "list-licenses",
    "list-enterprise-apps",
    "list-mfa-registration",
    "list-admin-roles",
    "audit-sp-permissions",
    "assign-mi-permissions",
    "count-users",
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Microsoft Graph tenant administration")
    parser.add_argument("--config", required=True, help="Path to tenant configuration YAML")
    parser.add_argument("--tenant-id", required=True, help="Tenant ID to target")
    parser.add_argument("--operation", required=True, choices=OPERATIONS, help="Operation to run")
    parser.add_argument("--group-id", help="Group object ID for add-group-owners")
    parser.add_argument("--user-id", action="append", default=[], help="User object ID (repeatable)")
    parser.add_argument("--service-principal-id", help="Service principal object ID")
    parser.add_argument("--permission", action="append", default=[], help="Graph permission name (repeatable)")
    parser.add_argument("--top", type=int, default=10, help="Number of users to list")
    parser.add_argument("--workers", type=int, default=8, help="Parallel workers for count-users")
    return parser.parse_args()


def build_operation(args: argparse.Namespace) -> Callable[[TenantOperations], Any]:
    if args.operation == "list-users":
        return lambda ops: ops.list_users(top=args.top)
    if args.operation == "add-group-owners":
        if not args.group_id or not args.user_id:
            raise SystemExit("--group-id and at least one --user-id are required for add-group-owners")
        return lambda ops: ops.add_group_owners(args.group_id, args.user_id)
    if args.operation == "list-licenses":
        return lambda ops: ops.list_subscribed_skus()
    if args.operation == "list-enterprise-apps":
        return lambda ops: ops.list_enterprise_apps()
    if args.operation == "list-mfa-registration":
        return lambda ops: ops.list_mfa_registration()
    if args.operation == "list-admin-roles":
        return lambda ops: ops.list_admin_role_members()
    if args.operation == "audit-sp-permissions":
        if not args.service_principal_id:
            raise SystemExit("--service-principal-id is required for audit-sp-permissions")
        return lambda ops: ops.audit_service_principal_permissions(args.service_principal_id)
    if args.operation == "assign-mi-permissions":
        if not args.service_principal_id or not args.permission:
            raise SystemExit(
                "--service-principal-id and at least one --permission are required for assign-mi-permissions"
            )
        return lambda ops: ops.assign_managed_identity_permissions(args.service_principal_id, args.permission)
    if args.operation == "count-users":
        return lambda ops: ops.count_users_partitioned(max_workers=args.workers)
    raise SystemExit(f"Unsupported operation: {args.operation}")


def main() -> None:
    args = parse_args()
    operation = build_operation(args)
    config = AdminConfig.load(Path(args.config))
    audit_logger = JsonAuditLogger()
    manager = TenantManager(config, audit_logger=audit_logger)

    result = manager.run_operation(tenant_id=args.tenant_id, operation=operation)

    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
