"""Show the organization tree with effective roles for one tenant."""
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.models.auth import Tenant
from app.services import organization_service, role_inheritance_service

app = create_app('development')


def _print_node(tenant_id, node, depth=0):
    indent = "  " * depth
    flag = "" if node["is_active"] else " (inactive)"
    print(f"{indent}L{node['level']} [{node['id']}] {node['code']} {node['name']}{flag}")
    for ra in role_inheritance_service.get_effective_roles(tenant_id, node["id"]):
        src = f"<- org {ra.inherited_from_organization_id}" if ra.is_inherited else "direct"
        print(f"{indent}    role {ra.role.name} ({src})")
    for child in node["children"]:
        _print_node(tenant_id, child, depth + 1)


with app.app_context():
    slug = sys.argv[1] if len(sys.argv) > 1 else "default"
    tenant = Tenant.query.filter_by(slug=slug).first()
    if tenant is None:
        print(f"Tenant '{slug}' not found")
        sys.exit(1)

    tree = organization_service.get_tree(tenant.id, include_inactive=True)
    print(f"\nTenant [{tenant.id}] {tenant.name}")
    for root in tree:
        _print_node(tenant.id, root)

    violations = organization_service.validate_tree(tenant.id)
    print(f"\n--- Validation: {'OK' if not violations else f'{len(violations)} violation(s)'} ---")
    for v in violations:
        print(f"  {v}")
