# chronomesh

chronomesh is a library for building nodes that replicate a key-value store
between peers while keeping causal order. Each node has the following parts:

- A **vector logical clock** (`chronomesh.vlc.Clock`). The node advances it on
  every local action and merges it with the clocks carried by incoming
  messages.
- **Signed messages** (`chronomesh.message.Message`). A message is hashed with
  Keccak-256 over its compact JSON form, behind the Ethereum signed-message
  prefix. The hash is signed with a secp256k1 key (`chronomesh.signing`).
- A **causal event graph** (`chronomesh.eventgraph.EventGraph`). Every applied
  write and every milestone becomes an event linked to its causal
  predecessors. Pending events can be committed to a Dgraph server through its
  HTTP `/alter` and `/mutate` endpoints.
- **Epochs and milestones** (`chronomesh.epoch.EpochTracker`). Writes are
  counted, and when the count reaches a threshold the epoch is closed. The
  node writes a milestone key `M:<n>` and sends it to its peers.

## Modules

| Module                  | Contents                                                                         |
|-------------------------|----------------------------------------------------------------------------------|
| `chronomesh.vlc`        | `Clock`, and `Ordering` (`LESS`, `EQUAL`, `GREATER`, `INCOMPARABLE`)             |
| `chronomesh.models`     | `Event`, `ParentRef` and `EventInfo` records                                     |
| `chronomesh.message`    | `Message`, its payload dataclasses, `MessageType` and the `new_*_message` builders |
| `chronomesh.signing`    | `keccak256`, `PrivateKey`, `private_key_from_hex`, `sign_hash`, `recover_address`, `encode_hex`, `decode_hex` |
| `chronomesh.eventgraph` | `EventGraph`, `DgraphClient`, `init_dgraph`, `vector_clock_to_string`, `EventGraphError` |
| `chronomesh.network`    | `Network`, a TCP transport addressed by multiaddr strings, and `PeerInfo`        |
| `chronomesh.events`     | `EventRecorder`, `parse_clock_string`, `format_clock`, `is_immediate_causal_predecessor` |
| `chronomesh.replica`    | `Replica`, the store, clock and write log with their apply and sync rules, and `ApplyAction` |
| `chronomesh.epoch`      | `EpochTracker`, `EpochFinalization`, `EpochVote` and parsing of epoch payloads   |
| `chronomesh.client`     | `Client`, a full node built from the parts above, and `ClientError`              |

## Vector clocks

```python
from chronomesh.vlc import Clock, Ordering

a = Clock()
a.inc(1)

b = a.copy()
b.inc(2)

assert a.compare(b) is Ordering.LESS
assert b.compare(a) is Ordering.GREATER

a.merge(b)     # a now holds the entry-wise maximum of both clocks
print(a.to_json())   # {"1":1,"2":1}
```

`Clock.is_plus_one_increment(other, sender_id)` is true when `other` is exactly
one step ahead for `sender_id` and is not ahead for any other node.

## Messages and signatures

Messages are built with the constructors in `chronomesh.message`, such as
`new_request_message(...)`, `new_reply_message(...)` and
`new_sync_request_message(...)`. They serialise with `Message.to_json()` and
`Message.from_json()`, or with `to_dict()` and `from_dict()`.

`Message.hash()` returns the 32-byte digest that is signed. It covers every
field except the signature.

`chronomesh.signing.sign_hash(digest, key)` returns a 65-byte signature laid out
as R, S and V. S is in low-S form and V is a recovery id from 0 to 3.
`recover_address(digest, signature)` returns the checksummed address of the
signer. Invalid keys or signatures raise `SigningError`, which is a
`ValueError`.

## Running a node

```python
import secrets
from chronomesh.client import Client

a = Client(1, "/ip4/127.0.0.1/tcp/0", secrets.token_hex(32), auto_commit_interval=None)
b = Client(2, "/ip4/127.0.0.1/tcp/0", secrets.token_hex(32), auto_commit_interval=None)

for node, other in ((a, b), (b, a)):
    node.add_peer(other.eth_address, other.multiaddr)
    node.add_peer_mapping(other.eth_address, other.id)

a.write("colour", "blue", b.eth_address)
found, value = a.read("colour", a.eth_address)   # a read from itself is answered locally

a.close()
b.close()
```

The `Client` methods are:

- `write(key, value, peer)` stores a new key locally, signs the write and sends
  it to `peer`. A key that already exists is left unchanged and nothing is
  sent.
- `read(key, peer)` returns `(found, value)`. It waits up to two seconds for
  the reply. It raises `ClientError` on a timeout, or when the answering node
  is not causally ready.
- `add_peer(eth_address, multiaddr)` registers where a peer listens. The
  address must end in `/p2p/<peer id>`.
- `add_peer_mapping(eth_address, clock_id)` registers a peer's clock id. A
  write from a sender with no mapping is answered with a sync request and is
  not applied.
- `terminate(peer)` sends a terminate notice.
- `handle_message(msg)` processes one message. It returns the signed response
  to send back, or `None`.
- `set_epoch_threshold(n)` sets how many writes close an epoch. The default is
  10, and values below 1 are ignored.
- `get_store()` returns a copy of the local store.
- `close()` shuts the node down. `Client` can also be used as a context
  manager.

Each node starts with a genesis milestone `M0` whose value is the node's id.
Keys that start with `M` are treated as milestones. Milestones received from
peers are always applied, and they do not count towards the epoch threshold.

When the threshold is reached, the node closes the epoch:

1. It writes `M:<n>` locally.
2. It links the milestone to the epoch's events in the graph.
3. It sends the milestone to every registered peer.

A P2P message containing `epoch_finalize` is recorded, and the node answers it
with a signed vote. A P2P message containing `epoch_vote` has its signature
checked. For an epoch listed in `EpochTracker.sent_epochs`, the node writes
and broadcasts the milestone once every other peer has voted.

### Event graph storage

`Client` takes two keyword arguments for the event graph:

- `dgraph_client`: a `DgraphClient` to commit events to.
- `auto_commit_interval`: the time between commits, in seconds or as a
  `timedelta`. The default is 300 seconds. Pass `None` to turn periodic
  commits off.

Without a `dgraph_client`, commits go to the connection made by
`init_dgraph(address)`. When neither is available, `commit_to_graph()` raises
`EventGraphError`, and the periodic commit logs the error.

## Transport

`chronomesh.network.Network` listens on an address of the form
`/ip4/<host>/tcp/<port>`. It also accepts `/ip6`, `/dns`, `/dns4` or `/dns6` in
place of `/ip4`. Each message is sent over its own TCP connection:

1. The sender writes a protocol line, `/p2p-framework/1.0.0 <peer id>`.
2. The receiver answers with the same kind of line. The sender checks that the
   peer id matches the one in the target address.
3. The message follows as one line of JSON.

## What the package does not do

- **Peer discovery.** Nodes do not find each other on the local network.
  Peers must be registered with `Client.add_peer`, or reported to
  `Network.announce_peer`.
- **Network services.** There is no NAT traversal, no hole punching, and no
  encryption of the transport. Only the messages themselves are signed.
- **Command-line program.** The package is used as a library.

## Tests

The test suite uses pytest. Install it with the `test` extra and run `pytest`.