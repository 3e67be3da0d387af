"""
Allocation Hierarchy - the per-fiscal-period budget aggregate

One aggregate holds the whole budget -> department -> project -> vendor tree
for a fiscal period and is the consistency boundary for every allocation and
spend. Nodes are stored arena-style:

- departments / projects / vendors: flat maps keyed by synthetic node id
- each child carries its parent's node id
- name indexes resolve (department), (department, project) and
  (project, vendor) to node ids

Root totals, remaining amounts and utilization are derived on read, so they
cannot drift from the stored allocated/spent figures.

The aggregate is only mutated by the flow coordinator while it holds the
period lock; everyone else reads a HierarchySnapshot.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from budget_trail.hierarchy.models import (
    DepartmentNode,
    DepartmentSnapshot,
    HierarchyLevel,
    HierarchySnapshot,
    ProjectNode,
    ProjectSnapshot,
    ReviewFlag,
    VendorNode,
    VendorSnapshot,
    VendorStatus,
    utilization,
)
from budget_trail.kernel.errors import NotFoundError, ValidationError
from budget_trail.kernel.ids import generate_id

DEFAULT_REVIEW_RATIO = Decimal("1.5")


def _require_non_negative(field: str, amount: Decimal) -> None:
    if amount < 0:
        raise ValidationError(field, f"must not be negative, got {amount}")


class AllocationHierarchy(BaseModel):
    """
    Budget aggregate for one fiscal period

    Attributes:
        fiscal_period: Aggregate key (e.g., "FY2025")
        version: Optimistic concurrency version, bumped by the store on save
        departments: Department nodes by node id
        projects: Project nodes by node id
        vendors: Vendor nodes by node id
        review_flags: Latest overspend flag per node id
    """

    fiscal_period: str
    version: int = 0
    departments: dict[str, DepartmentNode] = Field(default_factory=dict)
    projects: dict[str, ProjectNode] = Field(default_factory=dict)
    vendors: dict[str, VendorNode] = Field(default_factory=dict)
    department_index: dict[str, str] = Field(default_factory=dict)
    project_index: dict[str, str] = Field(default_factory=dict)
    vendor_index: dict[str, str] = Field(default_factory=dict)
    review_flags: dict[str, ReviewFlag] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    # Derived totals
    # ------------------------------------------------------------------

    def total_amount(self) -> Decimal:
        return sum((d.allocated_amount for d in self.departments.values()), Decimal("0"))

    def total_spent(self) -> Decimal:
        return sum((d.spent_amount for d in self.departments.values()), Decimal("0"))

    def total_remaining(self) -> Decimal:
        return self.total_amount() - self.total_spent()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _project_key(department_id: str, name: str) -> str:
        return f"{department_id}/{name}"

    @staticmethod
    def _vendor_key(project_id: str, vendor_id: str) -> str:
        return f"{project_id}/{vendor_id}"

    def find_department(self, name: str) -> DepartmentNode | None:
        node_id = self.department_index.get(name)
        return self.departments[node_id] if node_id else None

    def get_department(self, name: str) -> DepartmentNode:
        """
        Raises:
            NotFoundError: If the department does not exist
        """
        department = self.find_department(name)
        if department is None:
            raise NotFoundError("department", name)
        return department

    def find_project(self, department: str, name: str) -> ProjectNode | None:
        dept = self.find_department(department)
        if dept is None:
            return None
        node_id = self.project_index.get(self._project_key(dept.node_id, name))
        return self.projects[node_id] if node_id else None

    def get_project(self, department: str, name: str) -> ProjectNode:
        """
        Raises:
            NotFoundError: If the department or project does not exist
        """
        dept = self.get_department(department)
        node_id = self.project_index.get(self._project_key(dept.node_id, name))
        if node_id is None:
            raise NotFoundError("project", f"{department}/{name}")
        return self.projects[node_id]

    def find_vendor(self, department: str, project: str, vendor_id: str) -> VendorNode | None:
        proj = self.find_project(department, project)
        if proj is None:
            return None
        node_id = self.vendor_index.get(self._vendor_key(proj.node_id, vendor_id))
        return self.vendors[node_id] if node_id else None

    def get_vendor(self, department: str, project: str, vendor_id: str) -> VendorNode:
        """
        Raises:
            NotFoundError: If any node on the path does not exist
        """
        proj = self.get_project(department, project)
        node_id = self.vendor_index.get(self._vendor_key(proj.node_id, vendor_id))
        if node_id is None:
            raise NotFoundError("vendor", f"{department}/{project}/{vendor_id}")
        return self.vendors[node_id]

    def projects_of(self, department: DepartmentNode) -> list[ProjectNode]:
        return [p for p in self.projects.values() if p.department_id == department.node_id]

    def vendors_of(self, project: ProjectNode) -> list[VendorNode]:
        return [v for v in self.vendors.values() if v.project_id == project.node_id]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ensure_department(self, name: str, allocated_amount: Decimal) -> DepartmentNode:
        """
        Find or create a department, adding to its allocation

        Allocation accumulates; it is never overwritten.
        """
        if not name:
            raise ValidationError("department", "name is required")
        _require_non_negative("allocated_amount", allocated_amount)

        department = self.find_department(name)
        if department is None:
            department = DepartmentNode(node_id=generate_id(), name=name)
            self.departments[department.node_id] = department
            self.department_index[name] = department.node_id

        department.allocated_amount += allocated_amount
        return department

    def ensure_project(
        self,
        department: str,
        name: str,
        allocated_amount: Decimal,
        *,
        create_department: bool = False,
    ) -> ProjectNode:
        """
        Find or create a project under a department, adding to its allocation

        Args:
            department: Department name
            name: Project name
            allocated_amount: Amount added to the project allocation
            create_department: Create a missing department (with zero
                allocation) instead of failing

        Raises:
            NotFoundError: If the department is absent and creation was not
                requested
        """
        if not name:
            raise ValidationError("project", "name is required")
        _require_non_negative("allocated_amount", allocated_amount)

        if create_department:
            dept = self.ensure_department(department, Decimal("0"))
        else:
            dept = self.get_department(department)

        key = self._project_key(dept.node_id, name)
        node_id = self.project_index.get(key)
        if node_id is None:
            project = ProjectNode(node_id=generate_id(), department_id=dept.node_id, name=name)
            self.projects[project.node_id] = project
            self.project_index[key] = project.node_id
        else:
            project = self.projects[node_id]

        project.allocated_amount += allocated_amount
        return project

    def ensure_vendor(
        self,
        department: str,
        project: str,
        vendor_id: str,
        allocated_amount: Decimal,
        wallet_ref: str | None = None,
    ) -> VendorNode:
        """
        Find or create a vendor funding line under a project

        A new vendor starts in status `allocated`. Funding an existing vendor
        adds to its allocation and reopens it if it had completed; frozen or
        cancelled vendors cannot receive new funds.

        Raises:
            NotFoundError: If the department or project does not exist
            ValidationError: If the vendor is frozen or cancelled
        """
        if not vendor_id:
            raise ValidationError("vendor_id", "vendor identity is required")
        _require_non_negative("allocated_amount", allocated_amount)

        proj = self.get_project(department, project)
        key = self._vendor_key(proj.node_id, vendor_id)
        node_id = self.vendor_index.get(key)

        if node_id is None:
            vendor = VendorNode(
                node_id=generate_id(),
                project_id=proj.node_id,
                vendor_id=vendor_id,
                wallet_ref=wallet_ref,
            )
            self.vendors[vendor.node_id] = vendor
            self.vendor_index[key] = vendor.node_id
        else:
            vendor = self.vendors[node_id]
            if vendor.status in (VendorStatus.FROZEN, VendorStatus.CANCELLED):
                raise ValidationError(
                    "vendor_id", f"vendor {vendor_id} is {vendor.status.value}"
                )
            if vendor.status == VendorStatus.COMPLETED:
                vendor.status = (
                    VendorStatus.IN_PROGRESS if vendor.spent_amount > 0 else VendorStatus.ALLOCATED
                )
            if wallet_ref:
                vendor.wallet_ref = wallet_ref

        vendor.allocated_amount += allocated_amount
        return vendor

    def record_spend(
        self,
        department: str,
        project: str,
        vendor_id: str,
        amount: Decimal,
        *,
        review_ratio: Decimal = DEFAULT_REVIEW_RATIO,
    ) -> list[ReviewFlag]:
        """
        Propagate spend from a vendor up through its project and department

        Overspend is never rejected. Each level whose spend exceeds its
        allocation gets a review flag; past `review_ratio` the flag is
        marked `needs_review`.

        Args:
            department: Department name
            project: Project name
            vendor_id: Vendor identity
            amount: Amount spent (must be positive)
            review_ratio: Spent/allocated ratio above which review is needed

        Returns:
            Review flags raised or updated by this spend

        Raises:
            NotFoundError: If any node on the path does not exist
            ValidationError: On a non-positive amount or a frozen vendor
        """
        if amount <= 0:
            raise ValidationError("amount", f"spend must be positive, got {amount}")

        vendor = self.get_vendor(department, project, vendor_id)
        if vendor.status == VendorStatus.FROZEN:
            raise ValidationError("vendor_id", f"vendor {vendor_id} is frozen")
        if vendor.status == VendorStatus.CANCELLED:
            raise ValidationError("vendor_id", f"vendor {vendor_id} is cancelled")

        proj = self.projects[vendor.project_id]
        dept = self.departments[proj.department_id]

        vendor.spent_amount += amount
        proj.spent_amount += amount
        dept.spent_amount += amount

        if vendor.status == VendorStatus.ALLOCATED:
            vendor.status = VendorStatus.IN_PROGRESS

        flags = []
        for level, node_id, name, node in (
            (HierarchyLevel.VENDOR, vendor.node_id, vendor.vendor_id, vendor),
            (HierarchyLevel.PROJECT, proj.node_id, proj.name, proj),
            (HierarchyLevel.DEPARTMENT, dept.node_id, dept.name, dept),
        ):
            flag = self._overspend_flag(
                level, node_id, name, node.allocated_amount, node.spent_amount, review_ratio
            )
            if flag is not None:
                self.review_flags[node_id] = flag
                flags.append(flag)

        return flags

    @staticmethod
    def _overspend_flag(
        level: HierarchyLevel,
        node_id: str,
        name: str,
        allocated: Decimal,
        spent: Decimal,
        review_ratio: Decimal,
    ) -> ReviewFlag | None:
        if spent <= allocated:
            return None

        ratio = (spent / allocated).quantize(Decimal("0.0001")) if allocated > 0 else None
        return ReviewFlag(
            level=level,
            node_id=node_id,
            name=name,
            allocated_amount=allocated,
            spent_amount=spent,
            ratio=ratio,
            needs_review=ratio is None or ratio > review_ratio,
        )

    def release_department(self, name: str, amount: Decimal) -> DepartmentNode:
        """
        Return part of a department allocation

        Used when an approved request is cancelled before allocation.

        Raises:
            NotFoundError: If the department does not exist
            ValidationError: If the release exceeds the department allocation
        """
        if amount <= 0:
            raise ValidationError("amount", f"release must be positive, got {amount}")

        department = self.get_department(name)
        if amount > department.allocated_amount:
            raise ValidationError(
                "amount",
                f"cannot release {amount} from {name}, only {department.allocated_amount} allocated",
            )

        department.allocated_amount -= amount
        return department

    def set_vendor_status(
        self,
        department: str,
        project: str,
        vendor_id: str,
        status: VendorStatus,
    ) -> VendorNode:
        """
        Move a vendor to a new funding status

        Allowed moves:
        - allocated / in-progress -> frozen, completed, cancelled
        - frozen -> allocated / in-progress (unfreeze), cancelled
        - completed / cancelled are closed; only a new allocation reopens a
          completed vendor

        Unfreezing to `allocated` resolves to `in-progress` when funds were
        already spent.

        Raises:
            NotFoundError: If any node on the path does not exist
            ValidationError: If the move is not allowed
        """
        vendor = self.get_vendor(department, project, vendor_id)
        current = vendor.status

        if current in (VendorStatus.COMPLETED, VendorStatus.CANCELLED):
            allowed = False
        elif current == VendorStatus.FROZEN:
            allowed = status in (
                VendorStatus.ALLOCATED,
                VendorStatus.IN_PROGRESS,
                VendorStatus.CANCELLED,
            )
        else:
            allowed = status in (
                VendorStatus.FROZEN,
                VendorStatus.COMPLETED,
                VendorStatus.CANCELLED,
            )

        if not allowed:
            raise ValidationError(
                "status", f"vendor {vendor_id} cannot move from {current.value} to {status.value}"
            )

        if status in (VendorStatus.ALLOCATED, VendorStatus.IN_PROGRESS):
            status = VendorStatus.IN_PROGRESS if vendor.spent_amount > 0 else VendorStatus.ALLOCATED

        vendor.status = status
        return vendor

    def set_anchor_ref(self, department: str, project: str, vendor_id: str, anchor_ref: str) -> None:
        self.get_vendor(department, project, vendor_id).anchor_ref = anchor_ref

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_consistent(self) -> bool:
        """Check that spend at each level equals the sum of its children"""
        for dept in self.departments.values():
            projects = self.projects_of(dept)
            if dept.spent_amount != sum((p.spent_amount for p in projects), Decimal("0")):
                return False
            for proj in projects:
                vendors = self.vendors_of(proj)
                if proj.spent_amount != sum((v.spent_amount for v in vendors), Decimal("0")):
                    return False
        return True

    def snapshot(self, taken_at: datetime | None = None) -> HierarchySnapshot:
        """
        Build an immutable point-in-time view of the aggregate

        Departments, projects and vendors are sorted by name so two snapshots
        of the same state compare equal.
        """
        departments = []
        for dept in sorted(self.departments.values(), key=lambda d: d.name):
            projects = []
            for proj in sorted(self.projects_of(dept), key=lambda p: p.name):
                vendors = tuple(
                    VendorSnapshot(
                        vendor_id=v.vendor_id,
                        allocated_amount=v.allocated_amount,
                        spent_amount=v.spent_amount,
                        remaining_amount=v.remaining(),
                        utilization=utilization(v.spent_amount, v.allocated_amount),
                        wallet_ref=v.wallet_ref,
                        anchor_ref=v.anchor_ref,
                        status=v.status,
                    )
                    for v in sorted(self.vendors_of(proj), key=lambda v: v.vendor_id)
                )
                projects.append(
                    ProjectSnapshot(
                        name=proj.name,
                        allocated_amount=proj.allocated_amount,
                        spent_amount=proj.spent_amount,
                        remaining_amount=proj.remaining(),
                        utilization=utilization(proj.spent_amount, proj.allocated_amount),
                        vendors=vendors,
                    )
                )
            departments.append(
                DepartmentSnapshot(
                    name=dept.name,
                    allocated_amount=dept.allocated_amount,
                    spent_amount=dept.spent_amount,
                    remaining_amount=dept.remaining(),
                    utilization=utilization(dept.spent_amount, dept.allocated_amount),
                    projects=tuple(projects),
                )
            )

        total_amount = self.total_amount()
        total_spent = self.total_spent()
        return HierarchySnapshot(
            fiscal_period=self.fiscal_period,
            version=self.version,
            total_amount=total_amount,
            total_spent=total_spent,
            total_remaining=total_amount - total_spent,
            utilization=utilization(total_spent, total_amount),
            departments=tuple(departments),
            review_flags=tuple(self.review_flags.values()),
            taken_at=taken_at,
        )
