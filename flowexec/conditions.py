"""
Goto rule evaluation. Expressions are evaluated with simpleeval against the goto
node's input; the editor's JavaScript style operators (`===`, `&&`, `!` ...) are
accepted and rewritten to their Python equivalents first.
"""

import re
from typing import TYPE_CHECKING, Any

import structlog
from simpleeval import EvalWithCompoundTypes

from .codec import numeric_view
from .exceptions import EvaluationError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable

    from .document import GotoCondition

logger = structlog.get_logger(__name__)

_STRING_OR_OPERATOR = re.compile(
    r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')|(===|!==|&&|\|\||!(?!=))"""
)
_OPERATORS = {"===": "==", "!==": "!=", "&&": " and ", "||": " or ", "!": " not "}

_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
}


def _strip_semicolons(expr: str) -> str:
    return expr.strip().rstrip(";").rstrip()


def _translate(expr: str) -> str:
    return _STRING_OR_OPERATOR.sub(
        lambda match: match.group(1) or _OPERATORS[match.group(2)], expr
    )


def evaluate_condition(expr: str, value: Any) -> bool:
    """
    Evaluate a goto expression against `value`, bound as `input` (and as
    `ninput`, its numeric view). Raises `EvaluationError` on any failure.
    """
    names = {
        "input": value,
        "ninput": numeric_view(value),
        "true": True,
        "false": False,
        "null": None,
        "undefined": None,
        "True": True,
        "False": False,
        "None": None,
    }

    source = _translate(_strip_semicolons(expr)).strip()
    try:
        evaluator = EvalWithCompoundTypes(names=names, functions=_FUNCTIONS)
        return bool(evaluator.eval(source))
    except Exception as e:
        raise EvaluationError(expr, str(e) or type(e).__name__) from e


def choose_jump(
    conditions: "Iterable[GotoCondition]", value: Any
) -> tuple[str | None, bool]:
    """
    Pick the target of the first rule whose expression holds for `value`. Rules
    without an expression or a target are skipped and failing expressions count as
    false. Returns the target (or None) and whether the input is forwarded to it.
    """
    for rule in conditions:
        if not rule.expr or not rule.goto:
            continue

        try:
            matched = evaluate_condition(rule.expr, value)
        except EvaluationError as e:
            logger.warning("goto rule failed to evaluate", expr=rule.expr, error=str(e))
            matched = False

        if matched:
            return rule.goto, rule.forward_input

    return None, False
