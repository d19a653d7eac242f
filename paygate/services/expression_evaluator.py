# services/expression_evaluator.py
import ast
import asyncio
import io
import tokenize
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from paygate.core.logging import get_logger
from paygate.models.schemas.event import EventData
from paygate.models.schemas.trigger import TriggerRule
from paygate.repositories.occurrence_repo import OccurrenceRepository
from paygate.services.collaborators import AttributesProvider
from paygate.services.keyed_locks import KeyedLocks

logger = get_logger(__name__)


class MalformedExpression(ValueError):
    """The rule expression cannot be parsed or uses unsupported syntax."""


class _PredicateEvaluator(ast.NodeVisitor):
    """Safe interpreter for the rule predicate language.

    Only a subset of Python's expression grammar is supported: ``and``/``or``
    (also ``&&``/``||``), ``not``, comparisons including ``in``/``not in``,
    literals, list/tuple/set displays, and attribute or subscript access into
    the context namespaces (``user``, ``device``, ``params``, ``occurrences``).
    Missing attributes evaluate to ``None``. Anything else raises
    ``MalformedExpression``.
    """

    def __init__(self, context: Dict[str, Any]) -> None:
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        visitor = getattr(self, "visit_" + node.__class__.__name__, None)
        if visitor is None:
            raise MalformedExpression(f"unsupported expression element '{node.__class__.__name__}'")
        return visitor(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if node.value is None or isinstance(node.value, (str, int, float, bool)):
            return node.value
        raise MalformedExpression(f"unsupported constant type '{type(node.value).__name__}'")

    def visit_Name(self, node: ast.Name) -> Any:
        lowered = node.id.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if lowered in ("none", "null", "nil"):
            return None
        if node.id in self.context:
            return self.context[node.id]
        raise MalformedExpression(f"unknown symbol '{node.id}'")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, dict):
            return value.get(node.attr)
        return None

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(value, dict):
            return value.get(key)
        if isinstance(value, (list, tuple)) and isinstance(key, int):
            return value[key] if -len(value) <= key < len(value) else None
        return None

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(element) for element in node.elts)

    def visit_Set(self, node: ast.Set) -> Any:
        return {self.visit(element) for element in node.elts}

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        if isinstance(node.op, ast.Not):
            return not bool(self.visit(node.operand))
        if isinstance(node.op, ast.USub):
            return -self.visit(node.operand)
        raise MalformedExpression(f"unsupported unary operator '{node.op.__class__.__name__}'")

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            return all(bool(self.visit(value)) for value in node.values)
        if isinstance(node.op, ast.Or):
            return any(bool(self.visit(value)) for value in node.values)
        raise MalformedExpression(f"unsupported boolean operator '{node.op.__class__.__name__}'")

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    @staticmethod
    def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return left == right
        if isinstance(op, ast.NotEq):
            return left != right
        if isinstance(op, (ast.In, ast.NotIn)):
            if right is None:
                return isinstance(op, ast.NotIn)
            contained = left in right
            return contained if isinstance(op, ast.In) else not contained
        # Ordering against a missing value never holds
        if left is None or right is None:
            return False
        if isinstance(op, ast.Gt):
            return left > right
        if isinstance(op, ast.GtE):
            return left >= right
        if isinstance(op, ast.Lt):
            return left < right
        if isinstance(op, ast.LtE):
            return left <= right
        raise MalformedExpression(f"unsupported comparison '{op.__class__.__name__}'")


_LOGICAL_OPERATORS = {"&": "and", "|": "or"}


def _normalise_operators(expression: str) -> str:
    """Rewrites ``&&``/``||`` to ``and``/``or`` outside string literals."""
    tokens = list(tokenize.generate_tokens(io.StringIO(expression).readline))
    rewritten = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        if (
            token.type == tokenize.OP
            and token.string in _LOGICAL_OPERATORS
            and following is not None
            and following.string == token.string
            and following.start == token.end
        ):
            rewritten.append((tokenize.NAME, _LOGICAL_OPERATORS[token.string]))
            index += 2
            continue
        rewritten.append((token.type, token.string))
        index += 1
    return tokenize.untokenize(rewritten).strip()


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    try:
        return ast.parse(_normalise_operators(expression.strip()), mode="eval")
    except (SyntaxError, ValueError, RecursionError, tokenize.TokenError) as exc:
        raise MalformedExpression(f"invalid expression syntax '{expression}': {exc}") from exc


def _references_occurrences(tree: ast.Expression) -> bool:
    return any(isinstance(node, ast.Name) and node.id == "occurrences" for node in ast.walk(tree))


class ExpressionEvaluator:
    """
    Decides whether a single trigger rule matches an event.

    A match on a real (non-preemptive) evaluation records one occurrence for the
    rule's counter key; preemptive evaluations never write. A malformed
    expression is logged and treated as not matching.
    """

    def __init__(self, session_factory: sessionmaker, attributes: AttributesProvider):
        self.session_factory = session_factory
        self.attributes = attributes
        self._counter_locks = KeyedLocks()

    def _count(self, rule: TriggerRule) -> int:
        since: Optional[datetime] = None
        if rule.occurrence is not None and rule.occurrence.interval_minutes is not None:
            since = datetime.utcnow() - timedelta(minutes=rule.occurrence.interval_minutes)

        with self.session_factory() as db:
            return OccurrenceRepository(db).count_occurrences(rule.counter_key, since=since)

    def _record(self, rule: TriggerRule) -> None:
        with self.session_factory() as db:
            OccurrenceRepository(db).create_occurrence(rule.counter_key)

    async def count_occurrences(self, rule: TriggerRule) -> int:
        return await asyncio.to_thread(self._count, rule)

    async def _evaluate_expression(self, rule: TriggerRule, event: EventData, tree: ast.Expression) -> bool:
        attributes = await self.attributes.get_attributes()
        context: Dict[str, Any] = {
            "user": attributes.get("user", {}),
            "device": attributes.get("device", {}),
            "params": event.parameters,
            "occurrences": None,
        }
        if _references_occurrences(tree):
            context["occurrences"] = await self.count_occurrences(rule)

        try:
            return bool(_PredicateEvaluator(context).visit(tree))
        except MalformedExpression:
            raise
        except Exception as exc:
            # Covers type mismatches and trees nested deeper than the interpreter allows
            raise MalformedExpression(f"expression could not be evaluated: {exc!r}") from exc

    async def matches(self, rule: TriggerRule, event: EventData, is_preemptive: bool) -> bool:
        try:
            if rule.expression and rule.expression.strip():
                tree = compile_expression(rule.expression)
                matched = await self._evaluate_expression(rule, event, tree)
            else:
                matched = True
        except MalformedExpression as exc:
            logger.warning(
                "Skipping rule with malformed expression",
                rule_id=rule.rule_id,
                experiment_id=rule.experiment.id,
                expression=rule.expression,
                error=str(exc),
            )
            return False

        if not matched:
            return False

        async with self._counter_locks.hold([rule.counter_key]):
            if rule.occurrence is not None:
                count = await self.count_occurrences(rule)
                if count + 1 > rule.occurrence.max_count:
                    logger.debug(
                        "Rule occurrence cap reached",
                        rule_id=rule.rule_id,
                        occurrence_key=rule.counter_key,
                        count=count,
                        max_count=rule.occurrence.max_count,
                    )
                    return False

            if not is_preemptive:
                await asyncio.to_thread(self._record, rule)

        return True
