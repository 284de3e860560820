# irestore

Building blocks for a device restore session, in plain Python with no
third-party dependencies.

## Modules

- `irestore.log`: the output channels `info`, `error` and `debug`. Each has its
  own stream setter (`set_info_stream`, `set_error_stream`,
  `set_debug_stream`). Passing `None` silences that channel. Debug output is
  shown only after `set_debug(True)`, and `is_debug` reports the setting.
  `get_error` returns the last error message up to its first newline, or
  `None` if no error has been recorded. `debug_plist` prints a property list
  as XML. `print_progress_bar(percent)` draws a 50-column text bar.
- `irestore.common` provides:
  - the device `Mode` enum (`UNKNOWN`, `WTF`, `DFU`, `RECOVERY`, `RESTORE`,
    `NORMAL`), each with a `label`;
  - `read_file` and `write_file`;
  - `generate_guid`;
  - `mkdir_with_parents`;
  - `get_temp_filename`, which creates an empty file named by the prefix plus
    six random characters in the temporary directory;
  - `get_user_input(maxlen, secure)`, which reads a line from the terminal and
    echoes `*` when `secure` is set;
  - `dict_get_uint` and `dict_get_bool`, lenient lookups. They accept integers,
    strings, booleans and little-endian byte values.
- `irestore.ftab` handles `ftab` firmware containers:
  - `Ftab.parse` reads a container;
  - `Ftab.get_entry` returns the data of the last entry with a tag, and raises
    `KeyError` if there is none;
  - `Ftab.add_entry` appends an entry;
  - `Ftab.to_bytes` writes the container.

  Tags may be given as 4-byte `bytes`, `str` or `int`.
- `irestore.fls` handles `.fls` baseband images:
  - `FlsFile.parse` splits an image into `FlsElement`s;
  - `FlsFile.update_sig_blob` replaces the signature of the signed (`0x0c`)
    element;
  - `FlsFile.insert_ticket` puts a ticket in front of that element's payload,
    padded with `0xFF` to a multiple of four bytes;
  - `FlsFile.data` gives the serialised image.
- `irestore.download` fetches URLs:
  - `download_to_buffer(url)` returns the response body;
  - `download_to_file(url, filename, progress=False)` saves it to a file and
    reports whole-percent progress on the info channel.

  Both raise `DownloadError` when nothing is received. TLS certificates are
  not verified.
- `irestore.asr` provides `AsrClient`, which streams a filesystem image to the
  ASR service:
  - `AsrClient.open(device)` waits for the `Initiate` message;
  - `perform_validation` announces the image and answers `OOBData` requests
    until the service asks for the payload;
  - `send_payload` sends the image in 128 KiB chunks, each followed by its
    SHA-1 when the service asked for chunk checksums;
  - `set_progress_callback` receives the fraction sent so far.
- `irestore.fdr` provides `FdrClient`, the FDR control and connection proxy
  service:
  - `FdrClient.connect(device, FdrType.CTRL)` performs the control handshake;
  - `listen()` handles sync, ping and proxy messages until the connection
    ends;
  - `poll_and_handle_message()` handles a single message.

  A sync message opens an `FdrType.CONN` connection, which is served on a
  background thread.

## Devices and connections

`AsrClient.open` and `FdrClient.connect` take a device object. The package does
not include one. The device object must have a `connect(port)` method that
returns a connection with these methods:

- `send(data) -> int`
- `receive(size) -> bytes`
- `close()`

For FDR, `receive(size, timeout)` must also raise `TimeoutError` when nothing
arrives within `timeout`. A failed `connect` should raise `OSError`. The
clients then retry a few times before giving up.

```python
from irestore.asr import AsrClient

with AsrClient.open(device) as asr:
    asr.set_progress_callback(lambda fraction: print(f"{fraction:.0%}"))
    asr.perform_validation("filesystem.dmg")
    asr.send_payload("filesystem.dmg")
```

## Example: ftab

```python
from irestore.ftab import Ftab

with open("firmware.bin", "rb") as fh:
    ftab = Ftab.parse(fh.read())

ftab.add_entry(b"rkos", b"\x00" * 16)
blob = ftab.to_bytes()
```

Failures raise the package's own exceptions: `FtabError`, `FlsError`,
`DownloadError`, `AsrError` and `FdrError`.

## What this package does not do

- It has no command-line program.
- It has no USB or usbmux transport for reaching a device. You supply the
  device and connection objects described above.
- It does not carry out a whole restore. Mode switching (DFU, recovery),
  signing-ticket requests and firmware-archive handling are not part of the
  package.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```