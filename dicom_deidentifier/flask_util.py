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
"""Utilities to access flask context globals and build JSON responses."""
import http
from typing import Any, Mapping, Optional, Union

import flask

from dicom_deidentifier import deid_errors
from dicom_deidentifier import gateway_services
from shared_libs.logging_lib import cloud_logging_client

ERROR_KEY = 'error'
POST = 'POST'
PUT = 'PUT'


def get_request() -> flask.Request:
  return flask.request


def get_json() -> Optional[Any]:
  """Returns decoded JSON body or None if body is not JSON."""
  return get_request().get_json(force=True, silent=True)


def get_method() -> str:
  return get_request().method.upper()


def get_path() -> str:
  return get_request().path


def get_route() -> str:
  """Returns matched route template, e.g. /get_presigned_url."""
  rule = get_request().url_rule
  return rule.rule if rule is not None else 'unmatched'


def json_response(
    body: Mapping[str, Any], status: Union[int, http.HTTPStatus]
) -> flask.Response:
  response = flask.jsonify(body)
  response.status_code = int(status)
  return response


def error_response(
    exp: Exception, cause: Optional[BaseException] = None
) -> flask.Response:
  """Returns JSON error envelope with status derived from error kind.

  Internal errors are reported to the error reporter and logged once with
  the request method and path; reporters which write their own log entry
  carry the request context instead.

  Args:
    exp: Error returned to the client.
    cause: Underlying error reported in place of exp, if defined.

  Returns:
    flask.Response {"error": message}
  """
  services = gateway_services.current()
  kind = deid_errors.error_kind(exp)
  services.metrics.track_error(kind)
  if kind == deid_errors.ErrorKind.INTERNAL:
    reported = cause if cause is not None else exp
    context = {'method': get_method(), 'path': get_path()}
    services.error_reporter.report_error(reported, context)
    if not services.error_reporter.writes_log:
      cloud_logging_client.error(
          f'[http] error: {get_method()} {get_path()}: {reported}',
          context,
          reported,
      )
  return json_response(
      {ERROR_KEY: deid_errors.error_message(exp)},
      deid_errors.error_status_code(kind),
  )
