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
"""Reports internal errors to an external error tracker."""
import abc
from typing import Any, Mapping, Optional

from shared_libs.logging_lib import cloud_logging_client


class ErrorReporter(metaclass=abc.ABCMeta):

  # True if reporting itself writes an ERROR log entry for the error.
  writes_log = False

  @abc.abstractmethod
  def report_error(
      self, exp: BaseException, context: Optional[Mapping[str, Any]] = None
  ) -> None:
    """Reports handled internal error."""

  @abc.abstractmethod
  def report_panic(
      self, exp: BaseException, context: Optional[Mapping[str, Any]] = None
  ) -> None:
    """Reports unhandled exception."""


class NullErrorReporter(ErrorReporter):

  def report_error(self, exp, context=None) -> None:
    del exp, context

  def report_panic(self, exp, context=None) -> None:
    del exp, context


class CloudLoggingErrorReporter(ErrorReporter):
  """Reports errors as structured logs.

  Cloud Error Reporting groups ERROR and higher log entries that carry a
  stack trace, so no separate client is needed.
  """

  writes_log = True

  def report_error(self, exp, context=None) -> None:
    cloud_logging_client.error(
        f'Reported error: {exp}', context, exp, stack_frames_back=1
    )

  def report_panic(self, exp, context=None) -> None:
    cloud_logging_client.critical(
        f'Reported panic: {exp}', context, exp, stack_frames_back=1
    )
