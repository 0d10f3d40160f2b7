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
"""Waits for a Healthcare API long-running operation to become terminal.

State machine:

  REQUESTED -> POLLING -> SUCCEEDED | FAILED

Operation status is fetched at a fixed interval. A fetch error fails the
operation immediately. The loop is bounded by a maximum attempt count
and/or a wall clock deadline and can be cancelled through a
CancellationToken.
"""
import dataclasses
import enum
import threading
import time
from typing import Any, Callable, Mapping, Optional

from dicom_deidentifier import deid_errors
from shared_libs.logging_lib import cloud_logging_client


class PollState(enum.Enum):
  REQUESTED = 'requested'
  POLLING = 'polling'
  SUCCEEDED = 'succeeded'
  FAILED = 'failed'


@dataclasses.dataclass(frozen=True)
class PollPolicy:
  """Fixed interval retry policy.

  Attributes:
    interval_sec: Seconds between status requests.
    max_attempts: Maximum status requests; <= 0 disables attempt cap.
    timeout_sec: Maximum seconds spent polling; <= 0 disables deadline.
  """

  interval_sec: float = 1.0
  max_attempts: int = 0
  timeout_sec: float = 0.0

  def __post_init__(self):
    if self.interval_sec < 0:
      raise ValueError('Poll interval must be >= 0.')
    if self.max_attempts <= 0 and self.timeout_sec <= 0:
      raise ValueError('Poll policy requires max_attempts or timeout_sec.')


class CancellationToken:
  """Thread safe signal used to abort a running poll loop."""

  def __init__(self):
    self._event = threading.Event()

  def cancel(self) -> None:
    self._event.set()

  @property
  def is_cancelled(self) -> bool:
    return self._event.is_set()

  def wait(self, timeout: float) -> bool:
    """Sleeps up to timeout seconds; returns True if cancelled."""
    return self._event.wait(timeout)


def operation_error_message(operation: Mapping[str, Any]) -> str:
  error = operation.get('error')
  if isinstance(error, Mapping):
    return f'{error.get("code", "")} {error.get("message", "")}'.strip()
  return str(error)


class OperationPoller:
  """Polls an operation via get_operation until it is terminal."""

  def __init__(
      self,
      get_operation: Callable[[str], Mapping[str, Any]],
      policy: PollPolicy,
      on_state_change: Optional[Callable[[PollState], None]] = None,
      clock: Callable[[], float] = time.monotonic,
  ):
    self._get_operation = get_operation
    self._policy = policy
    self._on_state_change = on_state_change
    self._clock = clock
    self._state = None

  @property
  def state(self) -> Optional[PollState]:
    return self._state

  def _set_state(self, state: PollState) -> None:
    self._state = state
    if self._on_state_change is not None:
      self._on_state_change(state)

  def _fail(self, exp: deid_errors.DeidError) -> deid_errors.DeidError:
    self._set_state(PollState.FAILED)
    return exp

  def wait(
      self,
      operation_name: str,
      cancel_token: Optional[CancellationToken] = None,
  ) -> Mapping[str, Any]:
    """Blocks until operation is done.

    Args:
      operation_name: Long-running operation resource name.
      cancel_token: Optional token used to abort polling.

    Returns:
      JSON of the successfully completed operation.

    Raises:
      OperationFailedError: Operation completed with error or status request
        failed.
      OperationTimeoutError: Policy attempt cap or deadline reached.
      OperationCancelledError: cancel_token cancelled.
    """
    if cancel_token is None:
      cancel_token = CancellationToken()
    log_struct = {'operation_name': operation_name}
    self._set_state(PollState.REQUESTED)
    self._set_state(PollState.POLLING)
    start_time = self._clock()
    attempts = 0
    while True:
      if cancel_token.is_cancelled:
        raise self._fail(
            deid_errors.OperationCancelledError(
                f'Polling cancelled for operation {operation_name}.'
            )
        )
      try:
        operation = self._get_operation(operation_name)
      except Exception as exp:
        cloud_logging_client.error(
            'Failed to check status of operation.', log_struct, exp
        )
        raise self._fail(
            deid_errors.OperationFailedError(
                f'Operation status check failed; {exp}'
            )
        ) from exp
      attempts += 1
      if operation.get('done'):
        if operation.get('error') is not None:
          message = operation_error_message(operation)
          cloud_logging_client.error(
              'Operation completed with error.',
              log_struct,
              {'operation_error': message},
          )
          raise self._fail(
              deid_errors.OperationFailedError(
                  f'deidentify operation error: {message}'
              )
          )
        self._set_state(PollState.SUCCEEDED)
        cloud_logging_client.info(
            'Operation completed.', log_struct, {'attempts': attempts}
        )
        return operation
      policy = self._policy
      if 0 < policy.max_attempts <= attempts:
        raise self._fail(
            deid_errors.OperationTimeoutError(
                f'Operation {operation_name} not done after'
                f' {attempts} status checks.'
            )
        )
      if 0 < policy.timeout_sec <= self._clock() - start_time:
        raise self._fail(
            deid_errors.OperationTimeoutError(
                f'Operation {operation_name} not done after'
                f' {policy.timeout_sec} seconds.'
            )
        )
      cloud_logging_client.debug(
          'Operation running.', log_struct, {'attempts': attempts}
      )
      cancel_token.wait(policy.interval_sec)
