# Copyright 2023 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
"""Resolves configuration values from Secret Manager or the environment.

A deployment may store its configuration as a JSON object in a single
Secret Manager secret. The secret is named by the SECRET_MANAGER_ENV_CONFIG
environmental variable, e.g.:

  SECRET_MANAGER_ENV_CONFIG=projects/my-prj/secrets/deid-config/versions/3

Values defined in the secret take precedence over container env values.
"""
import json
import os
import re
import sys
import threading
from typing import Any, Callable, Mapping, Optional, TypeVar, Union

import cachetools
import google.api_core
from google.cloud import secretmanager

from shared_libs.flags import flag_utils

_T = TypeVar('_T')

_SECRET_MANAGER_ENV_CONFIG = 'SECRET_MANAGER_ENV_CONFIG'

_SECRET_NAME_RE = re.compile(
    r'projects/(?P<project>[^/]+)/secrets/(?P<secret>[^/]+)'
    r'(/versions/(?P<version>[^/]+))?/?',
    re.IGNORECASE,
)

# Secret manager is not queried from unit tests.
_ENABLE_ENV_SECRET_MANAGER = 'unittest' not in sys.modules


class SecretDecodeError(Exception):

  def __init__(self, msg: str, secret_name: str = ''):
    super().__init__(msg)
    self.secret_name = secret_name


class _SecretCache:
  """Process local cache of decoded secret mappings."""

  def __init__(self):
    self._lock = threading.Lock()
    self._values = cachetools.LRUCache(maxsize=4)

  def get_or_load(
      self, secret_name: str, loader: Callable[[str], Mapping[str, Any]]
  ) -> Mapping[str, Any]:
    with self._lock:
      value = self._values.get(secret_name)
      if value is None:
        value = loader(secret_name)
        self._values[secret_name] = value
      return value

  def clear(self) -> None:
    with self._lock:
      self._values.clear()


_cache = _SecretCache()


def _init_fork_module_state() -> None:
  global _cache
  _cache = _SecretCache()


def _latest_version(
    client: secretmanager.SecretManagerServiceClient, parent: str
) -> str:
  """Returns the highest numbered version of a secret."""
  versions = []
  for secret_version in client.list_secret_versions(request={'parent': parent}):
    match = _SECRET_NAME_RE.fullmatch(secret_version.name)
    if match is None or match.group('version') is None:
      continue
    try:
      versions.append(int(match.group('version')))
    except ValueError:
      continue
  if not versions:
    raise SecretDecodeError(
        f'Secret {parent} does not define a numbered version.',
        secret_name=parent,
    )
  return str(max(versions))


def _decode_payload(secret_name: str, data: Union[str, bytes, None]):
  if not data:
    return {}
  if isinstance(data, bytes):
    data = data.decode('utf-8')
  try:
    value = json.loads(data)
  except json.JSONDecodeError as exp:
    raise SecretDecodeError(
        'Secret value is not JSON.', secret_name=secret_name
    ) from exp
  if not isinstance(value, Mapping):
    raise SecretDecodeError(
        'Secret value is not a JSON object.', secret_name=secret_name
    )
  return value


def _load_secret(secret_name: str) -> Mapping[str, Any]:
  """Reads and decodes secret from secret manager (uncached)."""
  match = _SECRET_NAME_RE.fullmatch(secret_name)
  project, secret, version = match.group('project', 'secret', 'version')
  with secretmanager.SecretManagerServiceClient() as client:
    parent = client.secret_path(project, secret)
    try:
      if not version:
        version = _latest_version(client, parent)
      response = client.access_secret_version(
          request={'name': f'{parent}/versions/{version}'}
      )
    except google.api_core.exceptions.NotFound as exp:
      raise SecretDecodeError(
          'Secret not found.', secret_name=secret_name
      ) from exp
    except google.api_core.exceptions.PermissionDenied as exp:
      raise SecretDecodeError(
          'Permission denied reading secret.', secret_name=secret_name
      ) from exp
  return _decode_payload(secret_name, response.payload.data)


def _read_secrets(secret_name: Optional[str]) -> Mapping[str, Any]:
  """Returns JSON mapping stored in secret or empty mapping.

  Args:
    secret_name: projects/{project}/secrets/{secret}[/versions/{version}]

  Raises:
    SecretDecodeError: Secret name is malformed or secret cannot be read.
  """
  if not secret_name:
    return {}
  if _SECRET_NAME_RE.fullmatch(secret_name) is None:
    raise SecretDecodeError(
        'Expecting secret formatted as'
        f' projects/.+/secrets/.+[/versions/.+]; received {secret_name}.',
        secret_name=secret_name,
    )
  if not _ENABLE_ENV_SECRET_MANAGER:
    return {}
  return _cache.get_or_load(secret_name, _load_secret)


def get_secret_or_env(name: str, default: _T) -> Union[str, _T]:
  """Returns value defined in secret manager, env, or if undefined default.

  Args:
    name: Name of value.
    default: Value returned if neither the secret nor the env define name.

  Raises:
    SecretDecodeError: Error retrieving value from secret manager.
  """
  secret_env = _read_secrets(os.environ.get(_SECRET_MANAGER_ENV_CONFIG))
  value = secret_env.get(name)
  if value is not None:
    return str(value)
  return os.environ.get(name, default)


def get_bool_secret_or_env(name: str, undefined_value: bool = False) -> bool:
  return flag_utils.str_to_bool(get_secret_or_env(name, str(undefined_value)))


# gunicorn forks workers after this module is imported; locks held at fork
# time would never release in the child.
os.register_at_fork(after_in_child=_init_fork_module_state)
