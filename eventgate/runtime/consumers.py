# =============================================================================
# Consumers - Downstream Compute Units
# =============================================================================
# A ConsumerRef pairs an invoker (Lambda function or in-process callable)
# with the permission grants naming which rules may trigger it.
# =============================================================================

import importlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from eventgate.runtime.deps import Deps
from eventgate.runtime.errors import ConfigurationInvalid, ConsumerInvocationFailed

logger = logging.getLogger(__name__)


class Invoker:
    """Invocation contract of a consumer host."""

    def invoke_async(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Hand payload over for asynchronous execution; returns an acknowledgement."""
        raise NotImplementedError

    def invoke_sync(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run the consumer and return its response."""
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


class LambdaInvoker(Invoker):
    """Invokes a Lambda function through the Deps lambda client."""

    def __init__(self, function_name: str, deps: Deps, qualifier: Optional[str] = None):
        self.function_name = function_name
        self.qualifier = qualifier
        self._deps = deps

    def _invoke(self, payload: Dict[str, Any], invocation_type: str) -> Dict[str, Any]:
        kwargs = {
            "FunctionName": self.function_name,
            "InvocationType": invocation_type,
            "Payload": json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8"),
        }
        if self.qualifier:
            kwargs["Qualifier"] = self.qualifier
        try:
            return self._deps.lambda_client.invoke(**kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "ClientError")
            raise ConsumerInvocationFailed(f"{self.function_name}: {code}", {"code": code})
        except BotoCoreError as e:
            raise ConsumerInvocationFailed(f"{self.function_name}: {type(e).__name__}")

    def invoke_async(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._invoke(payload, "Event")
        status = response.get("StatusCode", 0)
        if status != 202:
            raise ConsumerInvocationFailed(f"{self.function_name}: unexpected status {status}")
        return {"statusCode": status}

    def invoke_sync(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._invoke(payload, "RequestResponse")
        raw = response.get("Payload")
        body = raw.read() if hasattr(raw, "read") else (raw or b"")
        if response.get("FunctionError"):
            raise ConsumerInvocationFailed(
                f"{self.function_name}: {response['FunctionError']}",
                {"payload": body.decode("utf-8", errors="replace")},
            )
        try:
            return json.loads(body) if body else {}
        except json.JSONDecodeError:
            raise ConsumerInvocationFailed(f"{self.function_name}: response is not JSON")

    def describe(self) -> str:
        return f"lambda:{self.function_name}"


class PythonInvoker(Invoker):
    """Runs an in-process callable; used for local runs and tests."""

    def __init__(self, func: Callable[[Dict[str, Any]], Any], name: str = ""):
        self.func = func
        self.name = name or getattr(func, "__name__", "callable")

    @classmethod
    def from_path(cls, dotted: str) -> "PythonInvoker":
        """Load 'package.module:function'."""
        module_name, _, attr = dotted.partition(":")
        if not module_name or not attr:
            raise ConfigurationInvalid(f"Python consumer handler must be 'module:function', got '{dotted}'")
        try:
            module = importlib.import_module(module_name)
            func = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise ConfigurationInvalid(f"Cannot load consumer handler '{dotted}': {e}")
        if not callable(func):
            raise ConfigurationInvalid(f"Consumer handler '{dotted}' is not callable")
        return cls(func, name=dotted)

    def invoke_async(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.func(payload)
        except Exception as e:
            raise ConsumerInvocationFailed(f"{self.name}: {e}")
        return {"statusCode": 202, "result": result}

    def invoke_sync(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.func(payload)
        except Exception as e:
            raise ConsumerInvocationFailed(f"{self.name}: {e}")
        return result if isinstance(result, dict) else {"statusCode": 200, "body": result}

    def describe(self) -> str:
        return f"python:{self.name}"


@dataclass(frozen=True)
class PermissionGrant:
    """Allows the named rule (optionally only for one event source) to invoke a consumer."""
    rule: str
    source: Optional[str] = None

    def covers(self, rule_names, event_source: str) -> bool:
        if self.rule not in rule_names:
            return False
        return self.source is None or self.source == event_source


@dataclass(frozen=True)
class ConsumerRef:
    id: str
    invoker: Invoker = field(compare=False)
    grants: Tuple[PermissionGrant, ...] = ()

    def is_permitted(self, rule_names, event_source: str) -> bool:
        return any(grant.covers(rule_names, event_source) for grant in self.grants)

    def invoke(self, event) -> Dict[str, Any]:
        """Submit an Event for asynchronous execution."""
        return self.invoker.invoke_async(event.to_dict())

    def call(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Synchronous request/response invocation (proxied compute surface)."""
        return self.invoker.invoke_sync(payload)


def parse_consumer(raw: Any, deps: Deps) -> ConsumerRef:
    """
    Build a ConsumerRef from configuration.

    Example:
        {"id": "grades", "type": "lambda", "functionName": "grades-fn",
         "grants": [{"rule": "university-events", "source": "university.apigw"}]}
    """
    if not isinstance(raw, dict):
        raise ConfigurationInvalid("Consumer definition must be an object")

    consumer_id = raw.get("id")
    if not consumer_id or not isinstance(consumer_id, str):
        raise ConfigurationInvalid("Consumer requires a string 'id'")

    kind = raw.get("type", "lambda")
    if kind == "lambda":
        function_name = raw.get("functionName")
        if not function_name:
            raise ConfigurationInvalid(f"Lambda consumer '{consumer_id}' requires 'functionName'")
        invoker = LambdaInvoker(function_name, deps, qualifier=raw.get("qualifier"))
    elif kind == "python":
        invoker = PythonInvoker.from_path(raw.get("handler", ""))
    else:
        raise ConfigurationInvalid(f"Consumer '{consumer_id}' has unknown type '{kind}'")

    grants = []
    for grant in raw.get("grants", []) or []:
        if not isinstance(grant, dict) or not isinstance(grant.get("rule"), str) or not grant.get("rule"):
            raise ConfigurationInvalid(f"Consumer '{consumer_id}' grant requires a 'rule' name")
        source = grant.get("source")
        if source is not None and (not isinstance(source, str) or not source):
            raise ConfigurationInvalid(f"Consumer '{consumer_id}' grant source must be a non-empty string")
        grants.append(PermissionGrant(rule=grant["rule"], source=source))

    return ConsumerRef(id=consumer_id, invoker=invoker, grants=tuple(grants))
