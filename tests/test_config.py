import io

import pytest

from o11ycanary.config import (
    CanariesConfig,
    CanaryConfig,
    ConfigError,
    Endpoint,
    TLSConfig,
    load_config,
    parse_config,
    parse_duration,
)

YAML_INPUT = """
canary:
  my_canary_1:
    type: otlp
    tls:
      enabled: true
      ca_file: /etc/ca.crt
      cert_file: /etc/client.crt
      key_file: /etc/client.key
      server_name: collector
    ingest:
      - url: metrics-insert.my-cluster.com
      - url: metrics-insert-2.my-cluster.com
        tls:
          enabled: true
          ca_file: /etc/other-ca.crt
          cert_file: /etc/other-client.crt
          key_file: /etc/other-client.key
          server_name: other-collector
    query:
      - url: select-endpoint.my-cluster.com
    additional_labels:
      environment: staging
    interval: 5m
  my_canary_2:
    type: prometheus
    ingest:
      - url: metrics-insert.my-cluster.com
    query:
      - url: select-endpoint.my-cluster.com
    additional_labels:
      environment: production
    interval: 10m
"""


def test_canaries_config():
    cfg = load_config(io.StringIO(YAML_INPUT))
    expected = {
        "my_canary_1": CanaryConfig(
            type="otlp",
            tls=TLSConfig(
                enabled=True,
                ca_file="/etc/ca.crt",
                cert_file="/etc/client.crt",
                key_file="/etc/client.key",
                server_name="collector",
            ),
            ingest=[
                Endpoint(url="metrics-insert.my-cluster.com", tls=None),
                Endpoint(
                    url="metrics-insert-2.my-cluster.com",
                    tls=TLSConfig(
                        enabled=True,
                        ca_file="/etc/other-ca.crt",
                        cert_file="/etc/other-client.crt",
                        key_file="/etc/other-client.key",
                        server_name="other-collector",
                    ),
                ),
            ],
            query=[Endpoint(url="select-endpoint.my-cluster.com")],
            additional_labels={"environment": "staging"},
            interval=5 * 60.0,
        ),
        "my_canary_2": CanaryConfig(
            type="prometheus",
            ingest=[Endpoint(url="metrics-insert.my-cluster.com")],
            query=[Endpoint(url="select-endpoint.my-cluster.com")],
            additional_labels={"environment": "production"},
            interval=10 * 60.0,
        ),
    }
    assert cfg.canaries == expected
    c1 = cfg.canaries["my_canary_1"]
    assert c1.ingest[0].tls is None
    assert c1.ingest[1].tls.ca_file == "/etc/other-ca.crt"


def test_resolve_tls_inherits():
    c1 = load_config(YAML_INPUT).canaries["my_canary_1"]
    assert c1.resolve_tls(c1.ingest[0]) is c1.tls
    assert c1.resolve_tls(c1.ingest[1]).server_name == "other-collector"


def test_with_defaults():
    cfg = CanaryConfig().with_defaults()
    assert cfg.max_active_series == 50
    assert cfg.interval == 5.0
    assert cfg.write_timeout == 10.0
    assert cfg.query_timeout == 60.0
    assert cfg.type == "metrics"


def test_with_defaults_keeps_set_values():
    cfg = CanaryConfig(type="otlp", interval=7.0, max_active_series=3).with_defaults()
    assert (cfg.type, cfg.interval, cfg.max_active_series) == ("otlp", 7.0, 3)


@pytest.mark.parametrize(
    "text,seconds",
    [("5m", 300.0), ("10m", 600.0), ("0", 0.0), ("1h30m", 5400.0), ("500ms", 0.5), ("-2s", -2.0)],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "5", "abc", "5x", "m5"])
def test_parse_duration_invalid(text):
    with pytest.raises(ConfigError):
        parse_duration(text)


def test_empty_document():
    assert load_config("") == CanariesConfig()


def test_bad_yaml():
    with pytest.raises(ConfigError):
        load_config("canary: [unclosed")


def test_wrong_type():
    with pytest.raises(ConfigError):
        parse_config({"canary": {"x": {"ingest": "notalist"}}})


def test_max_active_series():
    cfg = parse_config({"canary": {"x": {"max_active_canaried_series": 7}}})
    assert cfg.canaries["x"].max_active_series == 7