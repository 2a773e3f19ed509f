# relaygear

Composable pieces for building a layered proxy. Each piece is a *tunnel*. A
server accepts streams and packets from the layer beneath it. A client dials
out through the layer beneath it. Stack them to get the proxy you need.

## Modules

- `relaygear.metadata`: the SOCKS5 address format. `Address` holds an IP or a
  domain name and a port. `Metadata` adds a command byte to an address.
  `AddressType` has the values `IPV4`, `DOMAIN_NAME` and `IPV6`. Addresses are
  decoded from streams with `read_address` and `read_metadata`, and encoded with
  `to_bytes` / `write_to`. You can build them with `new_address_from_host_port`
  or `new_address_from_addr` (`"host:port"`). Malformed input raises
  `ProtocolError`.
- `relaygear.statistic`: the abstract `User` and `Authenticator`, plus a registry
  of authenticator factories. `register_authenticator_creator` adds a factory.
  `new_authenticator(context, name)` creates one authenticator per context object
  and caches it. The name is looked up in upper case. An unknown name raises
  `AuthError`.
- `relaygear.memory`: `MemoryAuthenticator`, which keeps users in memory, keyed
  by hash. Each `User` tracks sent and received byte counts. It samples its speed
  once a second and accepts a speed limit (a token bucket; zero removes the
  limit). It also accepts a limit on distinct IPs (`ip_limit`; zero or less means
  unlimited). `new_authenticator(Config(passwords=[...]))` adds a user for the
  SHA-224 hex digest of each password. Importing the module registers it under
  the name `MEMORY`.
- `relaygear.mysql`: `MySQLAuthenticator`, the in-memory authenticator kept in
  sync with a MySQL table named `users`. The table needs the columns `password`,
  `quota`, `download` and `upload`. Every `check_rate` seconds the authenticator
  does the following:
  - It adds buffered traffic to each user's row, with the received bytes counted
    as `upload` and the sent bytes as `download`.
  - It drops users whose row is gone.
  - It reloads the users who are still under quota. A negative quota means
    unlimited.

  `update_once()` runs one such round by hand. Setting `ca` turns on TLS (1.2 or
  later). `key` and `cert` must be set together or not at all. The module
  registers itself under the name `MYSQL`.
- `relaygear.freedom`: the direct outbound. `Client.dial_conn(address)` opens a
  TCP stream and `Client.dial_packet()` opens a UDP socket. Both can go through a
  SOCKS5 forward proxy, with username/password authentication and a UDP
  ASSOCIATE relay.
- `relaygear.dokodemo`: an inbound that listens on TCP and UDP. Every accepted
  stream and every UDP session is addressed to one configured target. A UDP
  session is dropped after `udp_timeout` seconds without replies.
- `relaygear.socks`: a SOCKS5 inbound. It runs over an underlying server, such
  as the adapter, and handles CONNECT and UDP ASSOCIATE. Only the "no
  authentication" method is offered.
- `relaygear.httpproxy`: an HTTP proxy inbound. A CONNECT request becomes a
  `ConnectConn` to the requested host. A plain request becomes an `OtherConn`:
  reading it yields the request and writing to it carries the response. Requests
  on a keep-alive connection follow one after another.
- `relaygear.adapter`: one local TCP/UDP listener shared by SOCKS5 and HTTP. A
  stream whose first byte is 5 goes to the SOCKS5 layer once that layer has
  started accepting. Every other stream goes to HTTP.
- `relaygear.router`: a routing `Client` that sends each destination to the
  proxy (the underlying client), dials it directly, or blocks it. The supported
  rules are:
  - `domain:` matches a domain or any of its subdomains.
  - `full:` matches an exact name.
  - `keyword:` matches a substring of the name.
  - `regex:` / `regexp:` match a regular expression.
  - `cidr:` matches an IP network.

  Rules are grouped under `proxy`, `bypass` and `block`. Domain strategies are
  `as_is`, `ip_if_non_match` and `ip_on_demand`. The default policy is one of
  `proxy`, `bypass` or `block`. `Client.dial_packet()` returns a `PacketConn`
  that routes each datagram separately.

## Installation

```
pip install relaygear
```

## Examples

Encoding and decoding an address:

```python
import io
from relaygear.metadata import new_address_from_host_port, read_address

addr = new_address_from_host_port("tcp", "example.com", 443)
raw = addr.to_bytes()
print(str(read_address(io.BytesIO(raw))))   # example.com:443
```

Counting traffic for users:

```python
from relaygear.memory import Config, new_authenticator

auth = new_authenticator(Config(passwords=[]))
auth.add_user("user1")
user = auth.auth_user("user1")      # None for an unknown hash
user.add_traffic(100, 200)
print(user.traffic())               # (100, 200)
print(user.reset_traffic())         # (100, 200), counters now zero
auth.close()
```

Routing decisions:

```python
from relaygear.metadata import new_address_from_host_port
from relaygear.router import Client, Config, Policy, RouterConfig

cfg = Config(RouterConfig(
    block=["domain:ads.example.com"],
    bypass=["cidr:192.168.0.0/16"],
))
router = Client(cfg, underlay=None)
router.route(new_address_from_host_port("tcp", "ads.example.com", 443))  # Policy.BLOCK
router.route(new_address_from_host_port("tcp", "192.168.1.5", 80))      # Policy.BYPASS
router.route(new_address_from_host_port("tcp", "example.org", 80))      # Policy.PROXY
```

A local SOCKS5 and HTTP inbound on one port:

```python
from relaygear import adapter, httpproxy, socks

base = adapter.Server(adapter.Config(local_host="127.0.0.1", local_port=1080))
socks_in = socks.Server(socks.Config(local_host="127.0.0.1", local_port=1080), base)
http_in = httpproxy.Server(base)

conn = socks_in.accept_conn()       # blocks until a client sends CONNECT
print(conn.metadata())              # the requested destination
```

## What it does not do

- There is no command-line program and no configuration-file loader. Each piece
  is built in Python from its `Config` dataclass.
- Nothing relays traffic between an inbound and an outbound. Accepted
  connections are handed to your code.
- `geoip:` and `geosite:` router rules are recognised but not loaded. The package
  reads no geodata files, so such rules only log an error.
- There is no encrypted transport, stream multiplexing or server-side proxy
  protocol. The layers here are the local inbounds, the direct outbound, the
  router and user accounting.

## Running the tests

```
pip install relaygear[test]
pytest
```