"""
RecipeRegistry - Load and validate Recipes.

The registry provides:
- Loading Recipes from a YAML (or JSON) definitions file
- Validation of the prerequisite graph when loaded (unknown names, cycles)
- Prerequisite expansion in deterministic topological order
- Content-addressable hashing of recipe definitions
"""

import hashlib
import json
from pathlib import Path
from typing import Iterable, Optional

import yaml

from mintorch.errors import CyclicDependency, RegistryError, UnknownRecipe
from mintorch.schemas import Recipe

# Built-in recipe definitions shipped with the package
BUILTIN_RECIPES = Path(__file__).parent / "recipes" / "builtin.yaml"


class RecipeRegistry:
    """
    Registry of Recipes keyed by name.

    Declaration order is preserved: it is the order recipes are listed in the
    CLI and the tie-break when expanding prerequisites.
    """

    def __init__(self, recipes: Iterable[Recipe]):
        """
        Build and validate the registry.

        Args:
            recipes: Recipe definitions in declaration order

        Raises:
            RegistryError: On duplicate names
            UnknownRecipe: If a recipe requires an unregistered name
            CyclicDependency: If the prerequisite graph has a cycle
        """
        self._recipes: dict[str, Recipe] = {}
        for recipe in recipes:
            if recipe.name in self._recipes:
                raise RegistryError(f"Duplicate recipe name: {recipe.name}")
            self._recipes[recipe.name] = recipe
        self._validate()

    @classmethod
    def from_file(cls, path: Path | str) -> "RecipeRegistry":
        """
        Load recipes from a definitions file.

        The file holds a top-level ``recipes`` list.

        Raises:
            RegistryError: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise RegistryError(f"Recipe definitions not found: {path}")

        try:
            data = cls._load_file(path)
        except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
            raise RegistryError(f"Failed to load {path}: {e}")

        entries = (data or {}).get("recipes")
        if not isinstance(entries, list):
            raise RegistryError(f"{path}: expected a top-level 'recipes' list")

        recipes = []
        for entry in entries:
            try:
                recipes.append(Recipe.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                raise RegistryError(f"Invalid recipe in {path}: {e}")
        return cls(recipes)

    @classmethod
    def builtin(cls, override: Optional[Path | str] = None) -> "RecipeRegistry":
        """Registry of the built-in recipes, or of an override file."""
        return cls.from_file(override or BUILTIN_RECIPES)

    @staticmethod
    def _load_file(path: Path) -> dict:
        suffix = path.suffix.lower()
        with open(path) as f:
            if suffix in (".yaml", ".yml"):
                return yaml.safe_load(f)
            elif suffix == ".json":
                return json.load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}")

    def _validate(self) -> None:
        """Check every prerequisite exists and the graph is acyclic."""
        for recipe in self._recipes.values():
            for prerequisite in recipe.requires:
                if prerequisite not in self._recipes:
                    raise UnknownRecipe(prerequisite, referenced_by=recipe.name)

        visited: set[str] = set()
        for name in self._recipes:
            self._expand(name, visited, [], [])

    def _expand(self, name: str, visited: set[str], in_progress: list[str], order: list[Recipe]) -> None:
        """Depth-first expansion; appends to order after all prerequisites."""
        if name in visited:
            return
        if name in in_progress:
            cycle_start = in_progress.index(name)
            raise CyclicDependency(in_progress[cycle_start:] + [name])

        in_progress.append(name)
        recipe = self._recipes[name]
        for prerequisite in recipe.requires:
            self._expand(prerequisite, visited, in_progress, order)
        in_progress.pop()

        visited.add(name)
        order.append(recipe)

    def get(self, name: str) -> Recipe:
        """
        Look up a recipe.

        Raises:
            UnknownRecipe: If no recipe has this name
        """
        try:
            return self._recipes[name]
        except KeyError:
            raise UnknownRecipe(name) from None

    def topological_order(self, name: str) -> list[Recipe]:
        """
        Expand a recipe's prerequisites.

        Returns:
            The recipe's transitive prerequisites followed by the recipe itself,
            prerequisites before dependents, siblings in declaration order.

        Raises:
            UnknownRecipe: If no recipe has this name
        """
        self.get(name)
        order: list[Recipe] = []
        self._expand(name, set(), [], order)
        return order

    def names(self) -> list[str]:
        """Recipe names in declaration order."""
        return list(self._recipes)

    def __contains__(self, name: str) -> bool:
        return name in self._recipes

    def __iter__(self):
        return iter(self._recipes.values())

    def __len__(self) -> int:
        return len(self._recipes)

    def definition_hash(self, name: str) -> str:
        """
        SHA256 of a recipe definition.

        Uses canonical JSON serialization (sorted keys, no whitespace)
        to ensure consistent hashing.
        """
        canonical = json.dumps(self.get(name).to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
