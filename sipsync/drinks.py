"""Drink classifications and their fixed volumes."""

from dataclasses import dataclass
from enum import Enum


class DrinkCategory(Enum):
    """Grouping used when listing drink types."""

    CANS = "Cans"
    BOTTLES = "Bottles"
    MCDONALDS = "McDonald's"
    CHICKFILA = "Chick-fil-A"
    FOUNTAIN = "Fountain"

    @property
    def types(self) -> list["DrinkType"]:
        return [t for t in DrinkType if t.category is self]


class DrinkType(Enum):
    """A drink size/container. The value is the display name and wire tag."""

    REGULAR_CAN = "Regular Can"
    TALL_CAN = "Tall Can"
    MINI_CAN = "Mini Can"
    BOTTLE_20OZ = "20oz Bottle"
    BOTTLE_2LITER = "2 Liter"
    MCDONALDS_SMALL = "McDonald's Small"
    MCDONALDS_MEDIUM = "McDonald's Medium"
    MCDONALDS_LARGE = "McDonald's Large"
    CHICKFILA_SMALL = "Chick-fil-A Small"
    CHICKFILA_MEDIUM = "Chick-fil-A Medium"
    CHICKFILA_LARGE = "Chick-fil-A Large"
    FOUNTAIN_SMALL = "Fountain Small"
    FOUNTAIN_MEDIUM = "Fountain Medium"
    FOUNTAIN_LARGE = "Fountain Large"
    GLASS_BOTTLE = "Glass Bottle"
    GLASS_WITH_ICE = "Glass with Ice"
    CAFE_FREESTYLE = "Freestyle Machine"

    @property
    def display_name(self) -> str:
        return self.value

    @property
    def short_name(self) -> str:
        return DRINK_TABLE[self].short_name

    @property
    def ounces(self) -> float:
        return DRINK_TABLE[self].ounces

    @property
    def category(self) -> DrinkCategory:
        return DRINK_TABLE[self].category

    @classmethod
    def parse(cls, name: str) -> "DrinkType":
        """Look up a drink type by tag, member name, or short name.

        Args:
            name: "Regular Can", "REGULAR_CAN", "regular_can" or "can".

        Returns:
            The matching DrinkType.

        Raises:
            ValueError: If nothing matches.
        """
        try:
            return cls(name)
        except ValueError:
            pass

        key = name.strip().upper().replace(" ", "_").replace("-", "_")
        if key in cls.__members__:
            return cls.__members__[key]

        lowered = name.strip().lower()
        for drink_type, info in DRINK_TABLE.items():
            if info.short_name.lower() == lowered:
                return drink_type

        raise ValueError(f"Unknown drink type: {name!r}")


@dataclass(frozen=True)
class DrinkInfo:
    short_name: str
    ounces: float
    category: DrinkCategory


# Adding a drink type only needs an enum member and a row here
DRINK_TABLE: dict[DrinkType, DrinkInfo] = {
    DrinkType.REGULAR_CAN: DrinkInfo("Can", 12, DrinkCategory.CANS),
    DrinkType.TALL_CAN: DrinkInfo("Tall", 16, DrinkCategory.CANS),
    DrinkType.MINI_CAN: DrinkInfo("Mini", 7.5, DrinkCategory.CANS),
    DrinkType.BOTTLE_20OZ: DrinkInfo("20oz", 20, DrinkCategory.BOTTLES),
    DrinkType.BOTTLE_2LITER: DrinkInfo("2L", 67.6, DrinkCategory.BOTTLES),
    DrinkType.GLASS_BOTTLE: DrinkInfo("Glass Btl", 12, DrinkCategory.BOTTLES),
    DrinkType.MCDONALDS_SMALL: DrinkInfo("McD S", 16, DrinkCategory.MCDONALDS),
    DrinkType.MCDONALDS_MEDIUM: DrinkInfo("McD M", 21, DrinkCategory.MCDONALDS),
    DrinkType.MCDONALDS_LARGE: DrinkInfo("McD L", 30, DrinkCategory.MCDONALDS),
    DrinkType.CHICKFILA_SMALL: DrinkInfo("CFA S", 16, DrinkCategory.CHICKFILA),
    DrinkType.CHICKFILA_MEDIUM: DrinkInfo("CFA M", 21, DrinkCategory.CHICKFILA),
    DrinkType.CHICKFILA_LARGE: DrinkInfo("CFA L", 30, DrinkCategory.CHICKFILA),
    DrinkType.FOUNTAIN_SMALL: DrinkInfo("Ftn S", 16, DrinkCategory.FOUNTAIN),
    DrinkType.FOUNTAIN_MEDIUM: DrinkInfo("Ftn M", 21, DrinkCategory.FOUNTAIN),
    DrinkType.FOUNTAIN_LARGE: DrinkInfo("Ftn L", 30, DrinkCategory.FOUNTAIN),
    DrinkType.GLASS_WITH_ICE: DrinkInfo("Glass", 12, DrinkCategory.FOUNTAIN),
    DrinkType.CAFE_FREESTYLE: DrinkInfo("Freestyle", 20, DrinkCategory.FOUNTAIN),
}
