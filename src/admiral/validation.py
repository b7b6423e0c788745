"""Validation shared by the reconcilers and the admission hooks.

Functions return a list of ``"<field path>: <message>"`` strings; an empty
list means the object is valid.
"""

import logging
import re

from kubernetes.utils.quantity import parse_quantity

from admiral import constants

logger = logging.getLogger(__name__)

MODULE_SCHEMES = ("registry://", "https://", "http://", "file://")
DOCKER_CONFIG_JSON_SECRET_TYPE = "kubernetes.io/dockerconfigjson"

_TOKEN_RE = re.compile(r"\s*(?:(&&|\|\||[!()])|([A-Za-z_][A-Za-z0-9_]*))")


class ExpressionError(ValueError):
    pass


class _ExpressionParser:
    """Recursive descent over ``name()``, ``&&``, ``||``, ``!``, parentheses,
    ``true`` and ``false``. Collects the member names that are called."""

    def __init__(self, expression):
        self.tokens = self._tokenize(expression)
        self.pos = 0
        self.calls = []

    @staticmethod
    def _tokenize(expression):
        tokens = []
        pos = 0
        expression = expression.rstrip()
        while pos < len(expression):
            match = _TOKEN_RE.match(expression, pos)
            if not match:
                raise ExpressionError(
                    f"unexpected character {expression[pos:].lstrip()[:1]!r} at {pos}"
                )
            tokens.append(match.group(1) or match.group(2))
            pos = match.end()
        return tokens

    def _peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self):
        token = self._peek()
        if token is None:
            raise ExpressionError("unexpected end of expression")
        self.pos += 1
        return token

    def _expect(self, expected):
        token = self._next()
        if token != expected:
            raise ExpressionError(f"expected {expected!r}, got {token!r}")

    def parse(self):
        if not self.tokens:
            raise ExpressionError("expression is empty")
        self._or()
        if self._peek() is not None:
            raise ExpressionError(f"unexpected token {self._peek()!r}")
        return self.calls

    def _or(self):
        self._and()
        while self._peek() == "||":
            self._next()
            self._and()

    def _and(self):
        self._unary()
        while self._peek() == "&&":
            self._next()
            self._unary()

    def _unary(self):
        if self._peek() == "!":
            self._next()
            self._unary()
            return
        self._primary()

    def _primary(self):
        token = self._next()
        if token == "(":
            self._or()
            self._expect(")")
        elif token in ("true", "false"):
            return
        elif token in ("&&", "||", "!", ")"):
            raise ExpressionError(f"unexpected token {token!r}")
        else:
            self._expect("(")
            self._expect(")")
            self.calls.append(token)


def parse_group_expression(expression):
    """Return the member names called by ``expression``.

    Raises:
        ExpressionError: when the expression does not compile
    """
    return _ExpressionParser(expression).parse()


def validate_module(module, path="spec.module"):
    if not module:
        return [f"{path}: module must not be empty"]
    for scheme in MODULE_SCHEMES:
        if module.startswith(scheme) and len(module) > len(scheme):
            return []
    return [
        f"{path}: unsupported module location {module!r}, "
        f"expected one of {', '.join(MODULE_SCHEMES)}"
    ]


def validate_policy(policy):
    """Validate the module or, for groups, every member and the expression."""
    if not policy.is_group:
        return validate_module(policy.module)

    errors = []
    members = policy.members
    if not members:
        errors.append("spec.policies: a policy group needs at least one member")
    for member_name, member in members.items():
        errors.extend(validate_module(member.module, f"spec.policies.{member_name}.module"))

    try:
        calls = parse_group_expression(policy.expression)
    except ExpressionError as e:
        errors.append(f"spec.expression: {e}")
        return errors

    for call in calls:
        if call not in members:
            errors.append(f"spec.expression: {call}() is not a member of the group")
    if not policy.message:
        errors.append("spec.message: must not be empty")
    return errors


def _validate_resources(limits, requests):
    errors = []
    parsed_limits = {}
    for name, value in (limits or {}).items():
        try:
            quantity = parse_quantity(value)
        except ValueError:
            errors.append(f"spec.limits.{name}: invalid quantity {value!r}")
            continue
        if quantity < 0:
            errors.append(f"spec.limits.{name}: must be greater than or equal to 0")
        parsed_limits[name] = quantity

    for name, value in (requests or {}).items():
        try:
            quantity = parse_quantity(value)
        except ValueError:
            errors.append(f"spec.requests.{name}: invalid quantity {value!r}")
            continue
        if quantity < 0:
            errors.append(f"spec.requests.{name}: must be greater than or equal to 0")
        if name in parsed_limits and quantity > parsed_limits[name]:
            errors.append(
                f"spec.requests.{name}: must be less than or equal to "
                f"{name} limit of {limits[name]}"
            )
    return errors


def budget_conflict(spec):
    return spec.minAvailable is not None and spec.maxUnavailable is not None


def validate_policy_server(server, kube=None, deployments_namespace=None):
    """Validate a PolicyServer; the image pull secret is checked when ``kube`` is given."""
    errors = []
    if len(server.name) > constants.DNS1035_LABEL_MAX_LENGTH:
        errors.append(
            "metadata.name: the PolicyServer name cannot be longer than "
            f"{constants.DNS1035_LABEL_MAX_LENGTH} characters"
        )

    spec = server.spec
    if budget_conflict(spec):
        errors.append(
            f"spec: minAvailable: {spec.minAvailable}, maxUnavailable: "
            f"{spec.maxUnavailable}: minAvailable and maxUnavailable cannot be both set"
        )

    errors.extend(_validate_resources(spec.limits, spec.requests))

    if spec.imagePullSecret and kube is not None:
        secret = kube.get("Secret", spec.imagePullSecret, deployments_namespace)
        if secret is None:
            errors.append(
                f"spec.imagePullSecret: secret {spec.imagePullSecret!r} not found "
                f"in namespace {deployments_namespace}"
            )
        elif secret.get("type") != DOCKER_CONFIG_JSON_SECRET_TYPE:
            errors.append(
                f"spec.imagePullSecret: secret {spec.imagePullSecret!r} is not of "
                f"type {DOCKER_CONFIG_JSON_SECRET_TYPE}"
            )
    return errors
