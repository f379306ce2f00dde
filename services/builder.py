from models.experiments import ExperimentCreate, VariantSpec
from services.allocator import validate_variant_set, validate_traffic_percentage
from services.errors import ValidationError

DEFAULT_VARIANTS = (
    ("Control", "Original experience", 50.0),
    ("Treatment", "New experience", 50.0),
)


class ExperimentDraftBuilder:
    """
    Editable experiment form. Rows may be added, edited and removed freely,
    incomplete or inconsistent states included; validation runs once, in build().
    """

    def __init__(self, name: str = "", description: str = "", traffic_percentage: float = 100.0, with_defaults: bool = True):
        self.name = name
        self.description = description
        self.traffic_percentage = traffic_percentage
        self.variants: list[dict] = []
        if with_defaults:
            for variant_name, variant_description, percentage in DEFAULT_VARIANTS:
                self.add_variant(variant_name, variant_description, percentage)

    def add_variant(self, name: str = "", description: str = "", percentage: float = 0.0) -> "ExperimentDraftBuilder":
        self.variants.append({"name": name, "description": description, "percentage": percentage})
        return self

    def update_variant(self, index: int, **changes) -> "ExperimentDraftBuilder":
        unknown = set(changes) - {"name", "description", "percentage"}
        if unknown:
            raise ValueError(f"Unknown variant fields: {sorted(unknown)}")
        self.variants[index].update(changes)
        return self

    def remove_variant(self, index: int) -> "ExperimentDraftBuilder":
        del self.variants[index]
        return self

    def build(self) -> ExperimentCreate:
        """Validate the whole draft and return the create request."""
        if not self.name or not self.name.strip():
            raise ValidationError("Experiment name must not be empty.")
        validate_traffic_percentage(self.traffic_percentage)

        # Validate on plain rows first so out-of-range values report as ValidationError
        rows = [VariantSpec.model_construct(**row) for row in self.variants]
        validate_variant_set(rows)

        return ExperimentCreate(
            name=self.name.strip(),
            description=self.description or None,
            traffic_percentage=self.traffic_percentage,
            variants=[VariantSpec(**row) for row in self.variants],
        )
