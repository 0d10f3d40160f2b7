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
"""Error kinds raised by the de-identifier and their HTTP status mapping."""
import enum
import http
from typing import Any, Sequence

from googleapiclient import errors as googleapiclient_errors


class ErrorKind(enum.Enum):
  CONFLICT = 'conflict'
  INTERNAL = 'internal'
  INVALID = 'invalid'
  NOT_FOUND = 'not_found'
  NOT_IMPLEMENTED = 'not_implemented'
  UNAUTHORIZED = 'unauthorized'


_KIND_TO_STATUS = {
    ErrorKind.CONFLICT: http.HTTPStatus.CONFLICT,
    ErrorKind.INVALID: http.HTTPStatus.BAD_REQUEST,
    ErrorKind.NOT_FOUND: http.HTTPStatus.NOT_FOUND,
    ErrorKind.NOT_IMPLEMENTED: http.HTTPStatus.NOT_IMPLEMENTED,
    ErrorKind.UNAUTHORIZED: http.HTTPStatus.UNAUTHORIZED,
    ErrorKind.INTERNAL: http.HTTPStatus.INTERNAL_SERVER_ERROR,
}
_STATUS_TO_KIND = {int(status): kind for kind, status in _KIND_TO_STATUS.items()}

# Forbidden is reported by the Healthcare API for IAM failures.
_STATUS_TO_KIND[int(http.HTTPStatus.FORBIDDEN)] = ErrorKind.UNAUTHORIZED

INTERNAL_ERROR_MESSAGE = 'Internal error.'


class DeidError(Exception):
  """Base error; carries the kind used to pick the HTTP status."""

  def __init__(self, kind: ErrorKind, message: str):
    super().__init__(message)
    self.kind = kind
    self.message = message


class MissingConfigError(DeidError):

  def __init__(self, missing: Sequence[str]):
    super().__init__(
        ErrorKind.INVALID,
        f'Missing required configuration: {", ".join(missing)}.',
    )
    self.missing = list(missing)


class CredentialResolutionError(DeidError):

  def __init__(self, message: str):
    super().__init__(ErrorKind.INTERNAL, message)


class DicomIngestError(DeidError):
  """Instance upload stopped at first failure.

  Instances listed in uploaded remain in the store; the store must be
  treated as partially ingested.
  """

  def __init__(self, message: str, uploaded: Sequence[Any], failed: Any):
    super().__init__(ErrorKind.INTERNAL, message)
    self.uploaded = list(uploaded)
    self.failed = failed


class OperationFailedError(DeidError):

  def __init__(self, message: str):
    super().__init__(ErrorKind.INTERNAL, message)


class OperationTimeoutError(DeidError):

  def __init__(self, message: str):
    super().__init__(ErrorKind.INTERNAL, message)


class OperationCancelledError(DeidError):

  def __init__(self, message: str):
    super().__init__(ErrorKind.INTERNAL, message)


def error_kind(exp: BaseException) -> ErrorKind:
  if isinstance(exp, DeidError):
    return exp.kind
  return ErrorKind.INTERNAL


def error_message(exp: BaseException) -> str:
  if isinstance(exp, DeidError):
    return exp.message
  return INTERNAL_ERROR_MESSAGE


def error_status_code(kind: Any) -> http.HTTPStatus:
  """Returns HTTP status for error kind; unknown kinds are internal errors."""
  return _KIND_TO_STATUS.get(kind, http.HTTPStatus.INTERNAL_SERVER_ERROR)


def from_error_status_code(status: int) -> ErrorKind:
  return _STATUS_TO_KIND.get(int(status), ErrorKind.INTERNAL)


def from_http_error(
    operation: str, exp: googleapiclient_errors.HttpError
) -> DeidError:
  """Converts Healthcare API HttpError into DeidError named by operation."""
  return DeidError(
      from_error_status_code(exp.resp.status), f'{operation}: {exp}'
  )
