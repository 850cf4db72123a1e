"""Telnet command and option byte values used by telnetapp."""
IAC = b"\xff"
DONT = b"\xfe"
DO = b"\xfd"
WONT = b"\xfc"
WILL = b"\xfb"
SB = b"\xfa"
GA = b"\xf9"
EL = b"\xf8"
EC = b"\xf7"
AYT = b"\xf6"
AO = b"\xf5"
IP = b"\xf4"
BRK = b"\xf3"
DM = b"\xf2"
NOP = b"\xf1"
SE = b"\xf0"

BINARY = b"\x00"
ECHO = b"\x01"
SGA = b"\x03"
STATUS = b"\x05"
TM = b"\x06"
TTYPE = b"\x18"
NAWS = b"\x1f"
TSPEED = b" "
LFLOW = b"!"
LINEMODE = b'"'
XDISPLOC = b"#"
NEW_ENVIRON = b"'"
CHARSET = b"*"

CR = b"\r"
LF = b"\n"
NUL = b"\x00"

(IS, SEND) = (bytes([const]) for const in range(2))
#: LINEMODE sub-command, rfc-1184
MODE = b"\x01"

__all__ = (
    "AO",
    "AYT",
    "BINARY",
    "BRK",
    "CHARSET",
    "CR",
    "DM",
    "DO",
    "DONT",
    "EC",
    "ECHO",
    "EL",
    "GA",
    "IAC",
    "IP",
    "IS",
    "LF",
    "LFLOW",
    "LINEMODE",
    "MODE",
    "NAWS",
    "NEW_ENVIRON",
    "NOP",
    "NUL",
    "SB",
    "SE",
    "SEND",
    "SGA",
    "STATUS",
    "TM",
    "TSPEED",
    "TTYPE",
    "WILL",
    "WONT",
    "XDISPLOC",
    "name_command",
    "name_commands",
)

#: Telnet verbs of option negotiation, 3-byte sequences.
NEGOTIATION_VERBS = (WILL, WONT, DO, DONT)

#: Telnet commands of only 2 bytes, ``IAC <cmd>``.
SIMPLE_COMMANDS = (NOP, DM, BRK, IP, AO, AYT, EC, EL, GA)

#: List of globals that may match an iac command option bytes
_DEBUG_OPTS = dict(
    [
        (value, key)
        for key, value in globals().items()
        if key
        in (
            "BINARY",
            "IAC",
            "DONT",
            "DO",
            "WONT",
            "WILL",
            "SB",
            "SE",
            "GA",
            "EL",
            "EC",
            "AYT",
            "AO",
            "IP",
            "BRK",
            "DM",
            "NOP",
            "ECHO",
            "SGA",
            "STATUS",
            "TM",
            "TTYPE",
            "NAWS",
            "TSPEED",
            "LFLOW",
            "LINEMODE",
            "XDISPLOC",
            "NEW_ENVIRON",
            "CHARSET",
        )
    ]
)


#: Names of sub-command bytes of a sub-negotiation, by option.
_SB_COMMANDS = {
    TTYPE: {IS: "IS", SEND: "SEND"},
    LINEMODE: {MODE: "MODE"},
}


def name_command(byte):
    """Return string description for (maybe) telnet command byte."""
    return _DEBUG_OPTS.get(byte, repr(byte))


def name_commands(cmds, sep=" "):
    """
    Return string description for array of (maybe) telnet command bytes.

    Within ``IAC SB <option> ... IAC SE``, the first byte after the option
    is named as that option's sub-command, and the remaining payload bytes
    are shown as-is.
    """
    cmds = bytes(cmds)
    names, in_sb, option, payload_len = [], False, None, 0
    for idx in range(len(cmds)):
        byte, prev = cmds[idx:idx + 1], cmds[max(idx - 1, 0):idx]
        if not in_sb:
            names.append(name_command(byte))
            if prev == IAC and byte == SB:
                in_sb, option, payload_len = True, None, 0
        elif option is None:
            option = byte
            names.append(name_command(byte))
        elif byte == IAC or (prev == IAC and byte == SE):
            names.append(name_command(byte))
            in_sb = byte != SE
        elif payload_len == 0:
            names.append(_SB_COMMANDS.get(option, {}).get(byte, repr(byte)))
            payload_len += 1
        else:
            names.append(repr(byte))
            payload_len += 1
    return sep.join(names)
