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
"""Tests for server."""
import http
import os

from absl import flags
from absl.testing import absltest
from absl.testing import flagsaver
import mock

from dicom_deidentifier import cloud_storage_gateway
from dicom_deidentifier import deid_errors
from dicom_deidentifier import error_reporter
from dicom_deidentifier import gateway_services
from dicom_deidentifier import metrics
from dicom_deidentifier import server
from dicom_deidentifier import shared_test_util

# Mark flags as parsed to avoid UnparsedFlagAccessError when run under pytest.
flags.FLAGS.mark_as_parsed()


def _services() -> gateway_services.GatewayServices:
  return gateway_services.GatewayServices(
      url_signer=shared_test_util.FakeUrlSigner(),
      metrics=metrics.MetricsSink(),
      error_reporter=error_reporter.NullErrorReporter(),
      storage_bucket_name='upload-bucket',
  )


class ServerTest(absltest.TestCase):

  def test_healthcheck(self):
    client = server.create_flask_app(_services()).test_client()
    response = client.get('/')
    self.assertEqual(response.status_code, http.HTTPStatus.OK)
    self.assertEqual(response.get_data(as_text=True), server.HEALTH_CHECK_HTML)

  def test_url_map_includes_endpoints(self):
    flask_app = server.create_flask_app(_services())
    routes = set(server._url_map_to_dict(flask_app.url_map).values())
    self.assertContainsSubset(
        {
            '/',
            '/get_presigned_url',
            '/start_anonymisation',
            '/start_deidentification',
        },
        routes,
    )

  def test_apps_do_not_share_services(self):
    first = _services()
    second = _services()
    first_app = server.create_flask_app(first)
    second_app = server.create_flask_app(second)
    with first_app.app_context():
      self.assertIs(gateway_services.current(), first)
    with second_app.app_context():
      self.assertIs(gateway_services.current(), second)

  @flagsaver.flagsaver(origins=['https://viewer.example.com'])
  def test_cors_allowed_origin(self):
    client = server.create_flask_app(_services()).test_client()
    response = client.options(
        '/get_presigned_url',
        headers={
            'Origin': 'https://viewer.example.com',
            'Access-Control-Request-Method': 'POST',
        },
    )
    self.assertEqual(
        response.headers.get('Access-Control-Allow-Origin'),
        'https://viewer.example.com',
    )

  @flagsaver.flagsaver(origins=['https://viewer.example.com'])
  def test_cors_rejects_unknown_origin(self):
    client = server.create_flask_app(_services()).test_client()
    response = client.options(
        '/get_presigned_url',
        headers={
            'Origin': 'https://other.example.com',
            'Access-Control-Request-Method': 'POST',
        },
    )
    self.assertIsNone(response.headers.get('Access-Control-Allow-Origin'))

  @flagsaver.flagsaver(
      bind_address='127.0.0.1:9090',
      gunicorn_workers=2,
      gunicorn_threads=5,
      shutdown_timeout_sec=7,
  )
  def test_gunicorn_config(self):
    flask_app = server.create_flask_app(_services())
    gunicorn_app = server.GunicornApplication(flask_app)
    self.assertEqual(gunicorn_app.cfg.bind, ['127.0.0.1:9090'])
    self.assertEqual(gunicorn_app.cfg.workers, 2)
    self.assertEqual(gunicorn_app.cfg.threads, 5)
    self.assertEqual(gunicorn_app.cfg.graceful_timeout, 7)
    self.assertEqual(gunicorn_app.cfg.worker_class_str, 'gthread')
    self.assertIs(gunicorn_app.load(), flask_app)

  @flagsaver.flagsaver(
      error_reporting_enabled=True, storage_bucket_name='prod-bucket'
  )
  def test_build_services(self):
    sink = metrics.MetricsSink()
    services = server.build_services(sink)
    self.assertIsInstance(
        services.url_signer, cloud_storage_gateway.CloudStorageGateway
    )
    self.assertIsInstance(
        services.error_reporter, error_reporter.CloudLoggingErrorReporter
    )
    self.assertIs(services.metrics, sink)
    self.assertEqual(services.bucket.name, 'prod-bucket')

  @flagsaver.flagsaver(error_reporting_enabled=False)
  def test_build_services_error_reporting_disabled(self):
    services = server.build_services(metrics.MetricsSink())
    self.assertIsInstance(
        services.error_reporter, error_reporter.NullErrorReporter
    )

  @flagsaver.flagsaver(project_id='', location='', dataset_id='')
  @mock.patch.object(server.GunicornApplication, 'run', autospec=True)
  def test_main_missing_config_fails_before_serving(self, mock_run):
    with mock.patch.dict(os.environ, {'SERVICE_ACCOUNT': ''}):
      with self.assertRaises(deid_errors.MissingConfigError) as ctx:
        server.main([])
    self.assertIn('project_id', str(ctx.exception))
    self.assertIn('SERVICE_ACCOUNT', str(ctx.exception))
    mock_run.assert_not_called()

  @flagsaver.flagsaver(
      project_id='test-prj',
      location='us-central1',
      dataset_id='test-ds',
      storage_bucket_name='upload-bucket',
      metrics_port=6060,
  )
  @mock.patch.object(metrics.MetricsSink, 'start_http_server', autospec=True)
  @mock.patch.object(server.GunicornApplication, 'run', autospec=True)
  def test_main_starts_server(self, mock_run, mock_metrics_server):
    with mock.patch.dict(os.environ, {'SERVICE_ACCOUNT': '/tmp/key.json'}):
      server.main([])
    mock_run.assert_called_once()
    mock_metrics_server.assert_called_once_with(mock.ANY, 6060)


if __name__ == '__main__':
  absltest.main()
