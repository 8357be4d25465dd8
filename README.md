# o11ycanary

Building blocks for a metrics pipeline canary. A canary writes a test gauge,
`o11y_canary_canaried_metric_total`, to OTLP ingest endpoints. It then queries
the same series back from Prometheus-compatible query endpoints. The canary's
own counters and histograms can be served in the Prometheus text format.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `o11ycanary.config`: configuration model (`CanariesConfig`, `CanaryConfig`,
  `Endpoint`, `TLSConfig`), `load_config`, `parse_config`, `parse_duration`
  and `ConfigError`.
- `o11ycanary.tlsutil`: `build_ssl_context(tls_config)` turns a `TLSConfig`
  into a client `ssl.SSLContext`. TLS 1.2 is the minimum version. It returns
  `None` when TLS is not enabled.
- `o11ycanary.otlp`: `Resource` and `initialize_resource`,
  `OTLPMetricExporter`, which posts OTLP JSON to `<endpoint>/v1/metrics`,
  `MeterProvider`, `CanaryGauge` and `init_otlp_meter_provider`.
- `o11ycanary.canary`: `Canary`, `CanaryClient`, `CanaryError` and
  `build_query`.
- `o11ycanary.metrics`: `Registry` with `Counter`, `Gauge` and `Histogram`
  instruments, rendered by `Registry.render()` in the Prometheus text format.
- `o11ycanary.server`: `MetricsServer`, which serves a `Registry` on
  `/metrics`. The default port is 8080.

## Configuration

```yaml
canary:
  my_canary:
    type: metrics
    tls:
      enabled: true
      ca_file: /etc/ca.crt
      cert_file: /etc/client.crt
      key_file: /etc/client.key
      server_name: collector
    ingest:
      - url: metrics-insert.example.com:4318
      - url: metrics-insert-2.example.com:4318
        tls:
          enabled: true
          ca_file: /etc/other-ca.crt
          server_name: other-collector
    query:
      - url: http://select-endpoint.example.com
    additional_labels:
      environment: staging
    interval: 5s
    write_timeout: 10s
    query_timeout: 60s
    max_active_canaried_series: 50
```

Durations use forms such as `5s`, `1m30s` or `250ms`. A bare integer counts
as nanoseconds. After loading, every duration is held in seconds.
`CanaryConfig.resolve_tls(endpoint)` returns the endpoint's own `tls` block,
or the canary-level one when the endpoint has none.

`CanaryConfig.with_defaults()` returns a copy with these defaults filled in
for unset fields:

| Setting | Default |
| --- | --- |
| `interval` | `5s` |
| `write_timeout` | `10s` |
| `query_timeout` | `60s` |
| `max_active_canaried_series` | `50` |
| `type` | `metrics` |

## Example

```python
import time

from o11ycanary.canary import Canary, CanaryError
from o11ycanary.config import load_config
from o11ycanary.otlp import initialize_resource

with open("config.yaml") as stream:
    config = load_config(stream)

name, settings = next(iter(config.canaries.items()))
settings = settings.with_defaults()
canary = Canary()
resource = initialize_resource("0.1.0", service_name=name)

endpoint = settings.ingest[0]
with canary.init_client(
    resource, endpoint.url, settings.interval, settings.write_timeout,
    settings.resolve_tls(endpoint),
) as client:
    request_id = canary.next_request_id("a1b2c3d4", 0, settings.max_active_series)
    canary.write(client, [endpoint.url], request_id, settings.write_timeout)
    time.sleep(settings.write_timeout)
    for query in settings.query:
        try:
            canary.query([query.url], request_id, settings.query_timeout,
                         settings.resolve_tls(query))
        except CanaryError as exc:
            print("query failed:", exc)
```

`Canary.write` records a random value between 0 and 99 for each target and
flushes it. `Canary.query` posts the query from `build_query(request_id)` to
`<target>/api/v1/query`. If the server answers 405 or 501, it retries with
GET. It raises `CanaryError` when the series is missing, the request fails,
or the timeout runs out. A write or query that times out stores its error in
`Canary.insertion_timestamps` under the request ID.

Serving internal metrics:

```python
from o11ycanary.metrics import Registry
from o11ycanary.server import MetricsServer

registry = Registry()
queries = registry.counter("o11y_canary_queries_total", "Total number of query attempts")
with MetricsServer(registry, port=8080):
    queries.add(1, {"canary_name": "my_canary"})
```

## What the package does not do

There is no command-line program. The package does not schedule canaries or
run their series on an interval by itself. It also does not export traces of
its own work. The caller drives writes and queries with the classes above and
records the results in a `Registry`.