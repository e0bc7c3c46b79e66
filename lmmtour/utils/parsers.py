"""
Parsing utilities for LMMTour.

This module provides parsing functions for model formulas and for the
comma-separated assignment strings used to configure simulated variables
and their effects.
"""

import re
from itertools import combinations
from typing import Any, Dict, List, Optional, Tuple

__all__ = []

# Unicode-aware identifier pattern: letter or underscore, then word characters
_IDENT = r"[^\W\d]\w*"

_POWER_RE = re.compile(rf"^I\(({_IDENT})\^(\d+)\)$")
_POLY_RE = re.compile(rf"poly\(({_IDENT}),(\d+)\)")
_CALL_RE = re.compile(rf"^({_IDENT})\((.*)\)$")


class _AssignmentParser:
    """Parses comma-separated ``name=value`` assignment strings.

    Supports two parse types, ``"variable_type"`` and ``"effect"``, each
    with a specialised value handler. Variable types use a call-like
    syntax: ``normal(10, 2)``, ``uniform(0, 1)``, ``grid(0, 9)``,
    ``factor(3)`` or ``factor(control, drugA, drugB)``.

    A module-level singleton ``_parser`` is used throughout the codebase.
    """

    def __init__(self):
        self.handlers = {
            "variable_type": self._parse_variable_type_value,
            "effect": self._parse_effect_value,
        }

    def _parse(self, input_string: str, parse_type: str, available_items: List[str]) -> Tuple[Dict, List[str]]:
        """Parse a comma-separated assignment string.

        Args:
            input_string: Raw user input (e.g. ``"x=0.5, group[B]=1.2"``).
            parse_type: ``"variable_type"`` or ``"effect"``.
            available_items: Valid names that may appear on the left-hand
                side of assignments.

        Returns:
            Tuple of ``(parsed_dict, error_list)`` keyed by name.
        """
        if parse_type not in self.handlers:
            return {}, [f"Unknown parse type: {parse_type}"]

        parsed_items = {}
        errors = []

        for assignment in self._split_assignments(input_string):
            try:
                name, value = self._parse_assignment(assignment)
            except ValueError as e:
                errors.append(str(e))
                continue

            if name not in available_items:
                errors.append(f"'{name}' not found. Available: {', '.join(available_items)}")
                continue

            parsed_value, error = self.handlers[parse_type](value)
            if error:
                errors.append(f"{name}: {error}")
                continue
            parsed_items[name] = parsed_value

        return parsed_items, errors

    def _split_assignments(self, input_string: str) -> List[str]:
        """Split assignments respecting parentheses."""
        assignments = []
        current: List[str] = []
        paren_count = 0

        for char in input_string:
            if char == "," and paren_count == 0:
                if current:
                    assignments.append("".join(current).strip())
                    current = []
            else:
                if char == "(":
                    paren_count += 1
                elif char == ")":
                    paren_count -= 1
                current.append(char)

        if current:
            assignments.append("".join(current).strip())

        return [a for a in assignments if a]

    def _parse_assignment(self, assignment: str) -> Tuple[str, str]:
        """Parse single assignment into name and value parts."""
        if "=" not in assignment:
            raise ValueError(f"Invalid format: '{assignment}'. Expected 'name=value'")
        name, value = assignment.split("=", 1)
        name = name.replace(" ", "")
        if not name:
            raise ValueError(f"Missing name in '{assignment}'")
        return name, value.strip()

    def _parse_variable_type_value(self, value: str) -> Tuple[Dict[str, Any], Optional[str]]:
        """Parse a variable type such as ``normal(10, 2)`` or ``factor(a, b)``."""
        supported_types = ["normal", "uniform", "grid", "factor"]

        value = value.replace(" ", "")
        if value in ("normal", "uniform", "grid"):
            defaults = {
                "normal": {"type": "normal", "mean": 0.0, "sd": 1.0},
                "uniform": {"type": "uniform", "low": 0.0, "high": 1.0},
                "grid": {"type": "grid", "low": 0.0, "high": 1.0},
            }
            return dict(defaults[value]), None
        if value == "factor":
            return {"type": "factor", "levels": ["1", "2", "3"]}, None

        match = _CALL_RE.match(value)
        if not match:
            return {}, f"Unsupported type '{value}'. Valid: {', '.join(supported_types)}"

        var_type, content = match.groups()
        if var_type not in supported_types:
            return {}, f"Unsupported type '{var_type}'. Valid: {', '.join(supported_types)}"

        parts = [p for p in content.split(",") if p]
        if var_type == "factor":
            return self._parse_factor_levels(parts)

        if len(parts) != 2:
            return {}, f"{var_type} expects exactly 2 values: {var_type}(a, b)"
        try:
            first, second = float(parts[0]), float(parts[1])
        except ValueError:
            return {}, f"Invalid {var_type} parameters '{content}'. Must be numeric"

        if var_type == "normal":
            if second <= 0:
                return {}, "Standard deviation must be positive"
            return {"type": "normal", "mean": first, "sd": second}, None

        if first >= second:
            return {}, f"Lower bound must be below upper bound, got {first} >= {second}"
        return {"type": var_type, "low": first, "high": second}, None

    def _parse_factor_levels(self, parts: List[str]) -> Tuple[Dict[str, Any], Optional[str]]:
        """Parse ``factor(k)`` or ``factor(level1, level2, ...)``."""
        if len(parts) == 1:
            try:
                n_levels = int(parts[0])
            except ValueError:
                return {}, f"Invalid number of levels '{parts[0]}'. Must be integer"
            if n_levels < 2:
                return {}, "Factor must have at least 2 levels"
            if n_levels > 20:
                return {}, "Factor cannot have more than 20 levels"
            return {"type": "factor", "levels": [str(i) for i in range(1, n_levels + 1)]}, None

        if len(parts) > 20:
            return {}, "Factor cannot have more than 20 levels"
        if len(set(parts)) != len(parts):
            return {}, "Factor levels must be unique"
        for level in parts:
            if not re.match(r"^\w+$", level):
                return {}, f"Invalid level name '{level}'"
        return {"type": "factor", "levels": list(parts)}, None

    def _parse_effect_value(self, value: str) -> Tuple[float, Optional[str]]:
        """Parse effect size value."""
        try:
            return float(value), None
        except ValueError:
            return 0.0, f"Invalid effect size '{value}'. Must be a number"


_parser = _AssignmentParser()


def _parse_equation(equation: str) -> Tuple[str, str, List[Dict]]:
    """Parse an R-style formula into its components.

    Splits the equation at ``~`` or ``=``, extracts random-effect
    terms, and returns the cleaned fixed-effect formula.

    Supported random-effect syntax:
    - ``(1|group)``: random intercept
    - ``(1 + x|group)`` or ``(x|group)``: correlated random intercept and slope
    - ``(1 + x1 + x2|group)``: random intercept and multiple slopes

    The fixed part may be ``1`` alone (``y ~ 1 + (1|g)``): the intercept is
    always in the model, so the returned fixed formula is then empty.

    Args:
        equation: Formula string (e.g. ``"y ~ x + (1|subject)"``).

    Returns:
        Tuple of ``(dependent_var, fixed_formula, random_effects)`` where
        *random_effects* is a list of dicts with keys ``"type"``
        (``"random_intercept"`` or ``"random_slope"``), ``"grouping_var"``
        and ``"slope_vars"``.

    Raises:
        ValueError: If the formula is empty, a grouping variable appears
            more than once, a random term is malformed, or the intercept
            is removed with ``0`` or ``-1``.
    """
    if not isinstance(equation, str):
        raise TypeError("formula must be a string")

    equation = equation.replace(" ", "")
    if not equation:
        raise ValueError("Formula cannot be empty")

    if "~" in equation:
        dep_var, formula_part = equation.split("~", 1)
    elif "=" in equation:
        dep_var, formula_part = equation.split("=", 1)
    else:
        dep_var, formula_part = "y", equation

    if not re.fullmatch(_IDENT, dep_var):
        raise ValueError(f"Invalid dependent variable name: '{dep_var}'")

    random_effects: List[Dict] = []
    seen_grouping_vars: set = set()

    if re.search(r"\([^()|]*\|[^()]*/[^()]*\)", formula_part):
        raise ValueError("Nested random effects (1|A/B) are not supported")

    random_pattern = r"\(([^()|]+)\|([^()|]+)\)"
    for match in re.finditer(random_pattern, formula_part):
        lhs, grouping_var = match.group(1), match.group(2)
        if not re.fullmatch(_IDENT, grouping_var):
            raise ValueError(f"Invalid grouping variable in random effect: '{grouping_var}'")
        if grouping_var in seen_grouping_vars:
            raise ValueError(f"Duplicate random effect grouping variable: '{grouping_var}'")
        seen_grouping_vars.add(grouping_var)

        parts = [p for p in lhs.split("+") if p]
        if not parts:
            raise ValueError(f"Empty random effect term for '{grouping_var}'")
        if "0" in parts or "-1" in lhs:
            raise ValueError(f"Random effects without an intercept are not supported: '({lhs}|{grouping_var})'")

        slope_vars = [p for p in parts if p != "1"]
        for var in slope_vars:
            if not re.fullmatch(_IDENT, var):
                raise ValueError(f"Invalid random slope variable '{var}' for '{grouping_var}'")

        if slope_vars:
            random_effects.append({"type": "random_slope", "grouping_var": grouping_var, "slope_vars": slope_vars})
        else:
            random_effects.append({"type": "random_intercept", "grouping_var": grouping_var, "slope_vars": []})

    fixed_part = re.sub(random_pattern, "", formula_part)
    fixed_terms = [t for t in fixed_part.split("+") if t]
    if not fixed_terms and not random_effects:
        raise ValueError("Formula must contain at least one term after the separator")
    if "0" in fixed_terms or "-1" in fixed_part:
        raise ValueError("Models without an intercept are not supported")

    # The intercept is always fitted; an explicit 1 adds nothing
    formula_part = "+".join(t for t in fixed_terms if t != "1")

    return dep_var, formula_part, random_effects


def _parse_component(token: str) -> Tuple[str, int]:
    """Parse a single factor of a term: ``x`` or ``I(x^k)``.

    Returns:
        Tuple of ``(variable_name, degree)``.
    """
    match = _POWER_RE.match(token)
    if match:
        degree = int(match.group(2))
        if degree < 2:
            raise ValueError(f"Power terms need a degree of at least 2: '{token}'")
        return match.group(1), degree
    if re.fullmatch(_IDENT, token):
        return token, 1
    raise ValueError(f"Invalid term: '{token}'")


def _component_name(var: str, degree: int) -> str:
    """Coefficient-style name of a term component."""
    return var if degree == 1 else f"I({var}^{degree})"


def _expand_poly(formula: str) -> str:
    """Rewrite ``poly(x, k)`` as ``x + I(x^2) + ... + I(x^k)``."""

    def _replace(match):
        var, degree = match.group(1), int(match.group(2))
        if degree < 1:
            raise ValueError(f"poly() degree must be positive, got {degree}")
        return "+".join(_component_name(var, d) for d in range(1, degree + 1))

    return _POLY_RE.sub(_replace, formula)


def _parse_independent_variables(formula: str) -> Tuple[Dict, Dict]:
    """Extract predictor variables and effects from the fixed-effect formula.

    Handles ``+`` for additive terms, ``:`` for specific interactions,
    ``*`` for full factorial expansion, ``I(x^k)`` for power terms and
    ``poly(x, k)`` for raw polynomials. A ``1`` term is the intercept and
    contributes no effect, so ``""`` and ``"1"`` give empty dicts.

    Args:
        formula: Right-hand side of the equation (fixed effects only).

    Returns:
        Tuple of ``(variables_dict, effects_dict)`` where each dict is
        keyed by auto-generated identifiers (``variable_1``, ``effect_1``,
        etc.). Effect dicts carry ``"name"``, ``"type"`` (``"main"``,
        ``"power"`` or ``"interaction"``) and ``"components"``, a list of
        ``(variable, degree)`` pairs.
    """
    formula = _expand_poly(formula.replace(" ", ""))
    terms = [t for t in formula.split("+") if t and t != "1"]

    variables: Dict[str, Dict] = {}
    effects: Dict[str, Dict] = {}
    seen_variables: set = set()
    seen_effects: set = set()

    def _add_variable(var):
        if var not in seen_variables:
            variables[f"variable_{len(variables) + 1}"] = {"name": var}
            seen_variables.add(var)

    def _add_effect(components):
        # z:x is the same term as x:z; the first spelling names it
        key = tuple(sorted(components))
        if key in seen_effects:
            return
        name = ":".join(_component_name(v, d) for v, d in components)
        if len(components) > 1:
            effect_type = "interaction"
        elif components[0][1] > 1:
            effect_type = "power"
        else:
            effect_type = "main"
        effects[f"effect_{len(effects) + 1}"] = {
            "name": name,
            "type": effect_type,
            "components": list(components),
            "var_names": [v for v, _ in components],
        }
        seen_effects.add(key)

    for term in terms:
        if "*" in term:
            components = [_parse_component(tok) for tok in term.split("*")]
            if len({v for v, _ in components}) != len(components):
                raise ValueError(f"A variable appears twice in interaction '{term}'")
            for var, _ in components:
                _add_variable(var)
            for r in range(1, len(components) + 1):
                for combo in combinations(components, r):
                    _add_effect(combo)
        else:
            components = [_parse_component(tok) for tok in term.split(":")]
            if len({v for v, _ in components}) != len(components):
                raise ValueError(f"A variable appears twice in interaction '{term}'")
            for var, _ in components:
                _add_variable(var)
            _add_effect(components)

    return variables, effects
