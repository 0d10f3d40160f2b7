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
"""Util methods for logging in the request gateway."""
import functools
import time
import uuid
from typing import Any, Callable

from dicom_deidentifier import flask_util
from shared_libs.logging_lib import cloud_logging_client

HTTP_REQUEST = 'HTTP_REQUEST'
REQUEST_ID = 'REQUEST_ID'


def log_exceptions(func: Callable[..., Any]) -> Callable[..., Any]:
  """Decorator for endpoints to add traceability and log uncaught exceptions.

  Args:
    func: Function to decorate.

  Returns:
    Decorated function.
  """

  @functools.wraps(func)
  def inner1(*args, **kwargs) -> Any:
    cloud_logging_client.set_log_signature({
        HTTP_REQUEST: f'{flask_util.get_method()}: {flask_util.get_path()}',
        REQUEST_ID: f'{uuid.uuid4()}_{time.time()}',
    })
    try:
      return func(*args, **kwargs)
    except Exception as exp:
      cloud_logging_client.error('An unexpected exception occurred.', exp)
      raise
    finally:
      cloud_logging_client.clear_log_signature()

  return inner1
