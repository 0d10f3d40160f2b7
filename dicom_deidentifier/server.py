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
"""Flask request gateway server for DICOM de-identification."""
import http
import time
from typing import Dict

from absl import app as absl_app
import flask
import flask_cors
from gunicorn.app.base import BaseApplication
from werkzeug import exceptions
from werkzeug import routing

from dicom_deidentifier import cloud_storage_gateway
from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_flags
from dicom_deidentifier import error_reporter
from dicom_deidentifier import flask_util
from dicom_deidentifier import gateway_services
from dicom_deidentifier import metrics
from dicom_deidentifier import request_gateway_blueprint
from dicom_deidentifier import web_socket
from shared_libs.logging_lib import cloud_logging_client

DEFAULT_TEXT_MIMETYPE = 'text/html; charset=utf-8'
HEALTH_CHECK_HTML = 'DICOM_Deidentifier-Health-Check'

_REQUEST_START_TIME = 'deid_request_start_time'


def _track_request_start() -> None:
  setattr(flask.g, _REQUEST_START_TIME, time.monotonic())


def _track_request_end(response: flask.Response) -> flask.Response:
  start = getattr(flask.g, _REQUEST_START_TIME, None)
  if start is not None:
    gateway_services.current().metrics.track_request(
        flask_util.get_method(),
        flask_util.get_route(),
        time.monotonic() - start,
    )
  return response


def _handle_unexpected_exception(exp: Exception) -> flask.Response:
  """Reports exceptions endpoints did not handle; returns 500 envelope."""
  if isinstance(exp, exceptions.HTTPException):
    return exp
  services = gateway_services.current()
  services.metrics.track_error(deid_errors.ErrorKind.INTERNAL)
  services.error_reporter.report_panic(
      exp,
      {'method': flask_util.get_method(), 'path': flask_util.get_path()},
  )
  return flask_util.json_response(
      {flask_util.ERROR_KEY: deid_errors.INTERNAL_ERROR_MESSAGE},
      http.HTTPStatus.INTERNAL_SERVER_ERROR,
  )


def _healthcheck() -> flask.Response:
  response = flask.make_response(HEALTH_CHECK_HTML, http.HTTPStatus.OK)
  response.mimetype = DEFAULT_TEXT_MIMETYPE
  return response


def create_flask_app(services: gateway_services.GatewayServices) -> flask.Flask:
  """Returns request gateway app bound to services."""
  flask_app = flask.Flask(__name__)
  gateway_services.install(flask_app, services)
  flask_cors.CORS(
      flask_app,
      origins=deid_flags.ORIGINS_FLG.value,
      supports_credentials=True,
  )
  flask_app.before_request(_track_request_start)
  flask_app.after_request(_track_request_end)
  flask_app.register_error_handler(Exception, _handle_unexpected_exception)
  flask_app.add_url_rule(
      '/', endpoint='healthcheck', view_func=_healthcheck, methods=['GET']
  )
  flask_app.register_blueprint(request_gateway_blueprint.request_gateway)
  web_socket.sock.init_app(flask_app)
  return flask_app


class GunicornApplication(BaseApplication):
  """gunicorn WSGI wrapper for the Flask server.

  Wrapping gunicorn in an absl.app gives the server absl flag and logging
  support, which invoking flask_app from the gunicorn command line would not.
  """

  def __init__(self, app: flask.Flask):
    self.application = app
    super().__init__()

  def load_config(self):
    self.cfg.set('worker_class', 'gthread')
    self.cfg.set('workers', str(deid_flags.GUNICORN_WORKERS_FLG.value))
    self.cfg.set('threads', str(deid_flags.GUNICORN_THREADS_FLG.value))
    self.cfg.set('bind', deid_flags.BIND_ADDRESS_FLG.value)
    self.cfg.set(
        'graceful_timeout', str(deid_flags.SHUTDOWN_TIMEOUT_SEC_FLG.value)
    )
    self.cfg.set('accesslog', '-')
    cloud_logging_client.info('Gunicorn configuration', self.cfg.settings)

  def load(self) -> flask.Flask:
    return self.application


def _url_map_to_dict(url_map: routing.Map) -> Dict[str, str]:
  return {str(rule.endpoint): str(rule.rule) for rule in url_map.iter_rules()}


def build_services(
    metrics_sink: metrics.MetricsSink,
) -> gateway_services.GatewayServices:
  """Returns production collaborators configured from flags."""
  if deid_flags.ERROR_REPORTING_ENABLED_FLG.value:
    reporter = error_reporter.CloudLoggingErrorReporter()
  else:
    reporter = error_reporter.NullErrorReporter()
  return gateway_services.GatewayServices(
      url_signer=cloud_storage_gateway.CloudStorageGateway(),
      metrics=metrics_sink,
      error_reporter=reporter,
      storage_bucket_name=deid_flags.STORAGE_BUCKET_NAME_FLG.value,
  )


def main(unused_argv):
  try:
    deid_flags.validate_required_config(
        deid_flags.SERVER_FLAGS, require_service_account=True
    )
  except deid_errors.MissingConfigError as exp:
    cloud_logging_client.critical('Server configuration is incomplete.', exp)
    raise
  cloud_logging_client.info(
      'DICOM de-identifier server starting.',
      {
          'bind_address': deid_flags.BIND_ADDRESS_FLG.value,
          'domain': deid_flags.DOMAIN_FLG.value,
          'dataset': deid_flags.dataset_path().name,
      },
  )
  metrics_sink = metrics.MetricsSink()
  metrics_sink.start_http_server(deid_flags.METRICS_PORT_FLG.value)
  flask_app = create_flask_app(build_services(metrics_sink))
  cloud_logging_client.info(
      'Flask Route Url Map', _url_map_to_dict(flask_app.url_map)
  )
  GunicornApplication(flask_app).run()


def run() -> None:
  try:
    absl_app.run(main)
  except Exception as exp:
    cloud_logging_client.critical('Exception raised in deidentifier', exp)
    raise


if __name__ == '__main__':
  run()
