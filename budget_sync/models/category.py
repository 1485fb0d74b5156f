from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from decimal import Decimal

# ===== CATEGORY PYDANTIC MODELS =====

class CompositeComponent(BaseModel):
    category_name: str = Field(..., min_length=1, max_length=100)
    weight: Decimal = Field(..., gt=0, le=100, description="Share of the amount, in percent")


class CategoryBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Category name")
    description: Optional[str] = Field(None, max_length=255)
    is_discretionary: bool = Field(False, description="Eligible for posture-based scaling")
    is_composite: bool = False
    composite_data: Optional[List[CompositeComponent]] = None


class CategoryCreate(CategoryBase):
    group_name: str = Field(..., min_length=1, max_length=100, description="Group to place the category in")

    @field_validator('name', 'group_name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode='after')
    def validate_composition(self):
        if self.is_composite:
            if not self.composite_data:
                raise ValueError('Composite categories need composite_data')
            total = sum(component.weight for component in self.composite_data)
            if total != Decimal("100"):
                raise ValueError('Composite weights must sum to 100')
        elif self.composite_data:
            raise ValueError('composite_data is only allowed on composite categories')
        return self


class CategoryResponse(CategoryBase):
    id: int
    group_id: int
    budget_id: Optional[int] = None

    class Config:
        from_attributes = True


class MappedCategory(BaseModel):
    """Result of resolving one external label against the internal taxonomy."""
    category_id: int
    category_name: str
    group_name: str
