"""
Parsers for stage definition files (Dockerfile syntax), extracting
instructions and assembling them into ordered build stages.
"""
import json
import logging
import posixpath
import re
import shlex
from typing import Dict, List, Optional

from ..errors import StageDefinitionError
from ..MODELS.build_stage import BuildStage, CopyInstruction, validate_stages
from ..MODELS.dockerfile_ast import Instruction
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

_INSTRUCTION = re.compile(r'^\s*([A-Za-z]+)(?:\s+(.*))?$', re.DOTALL)
_FLAG = re.compile(r'^--([a-z][a-z-]*)(?:=(\S*))?$')
_FLAGGED = {"FROM", "COPY", "ADD", "RUN"}
_IGNORED = {"USER", "VOLUME", "HEALTHCHECK", "SHELL", "STOPSIGNAL", "ONBUILD", "MAINTAINER"}
# instructions whose arguments see ARG/ENV substitution
_SUBSTITUTED = {"FROM", "COPY", "ADD", "WORKDIR", "ENV", "EXPOSE", "LABEL", "ARTIFACT", "ARG"}
_ESCAPED_DOLLAR = '\x00'

SHELL = ["/bin/sh", "-c"]


class DockerfileParser:
    """
    Parser for stage definition files.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a stage definition file from a file path.

        Args:
            dockerfile_path (str): Path to the file.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses instructions from a string.

        Whole-line comments are dropped, including inside a continued
        instruction, and trailing backslashes join lines.

        Args:
            content (str): Content of the file.

        Returns:
            List[Instruction]: List of parsed instructions.

        Raises:
            StageDefinitionError: If a line is not an instruction.
        """
        instructions = []
        pending: List[str] = []
        start_line = 0

        for number, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            if stripped.startswith('#'):
                continue
            if not stripped and not pending:
                continue
            if not pending:
                start_line = number

            if stripped.endswith('\\'):
                pending.append(stripped[:-1].strip())
                continue

            pending.append(stripped)
            text = ' '.join(p for p in pending if p)
            pending = []
            instructions.append(self._parse_line(text, start_line))

        if pending:
            text = ' '.join(p for p in pending if p)
            if text:
                instructions.append(self._parse_line(text, start_line))

        return instructions

    def _parse_line(self, text: str, line: int) -> Instruction:
        match = _INSTRUCTION.match(text)
        if not match:
            raise StageDefinitionError(f"Cannot parse instruction: {text[:60]!r}", line=line)

        inst = match.group(1).upper()
        args_str = (match.group(2) or '').strip()

        flags: Dict[str, str] = {}
        if inst in _FLAGGED:
            while args_str.startswith('--'):
                token, _, rest = args_str.partition(' ')
                flag = _FLAG.match(token)
                if not flag:
                    raise StageDefinitionError(f"Malformed flag {token!r}", line=line)
                flags[flag.group(1)] = flag.group(2) or 'true'
                args_str = rest.strip()

        exec_form = False
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                parsed = json.loads(args_str)
                if isinstance(parsed, list) and all(isinstance(a, str) for a in parsed):
                    args = parsed
                    exec_form = True
                else:
                    args = [args_str]
            except json.JSONDecodeError:
                # not valid JSON, treat as shell form
                args = [args_str]
        elif inst in ("ENV", "LABEL"):
            args = self._split_pairs(args_str, line)
        elif inst in ("COPY", "ADD", "EXPOSE", "FROM"):
            args = self._split_words(args_str, line)
        elif args_str:
            args = [args_str]
        else:
            args = []

        return Instruction(
            instruction=inst,
            arguments=args,
            flags=flags,
            exec_form=exec_form,
            raw=text,
            line=line,
        )

    def _split_words(self, text: str, line: int) -> List[str]:
        # shlex would eat the backslash of an escaped \$ before substitution
        try:
            words = shlex.split(text.replace('\\$', _ESCAPED_DOLLAR))
        except ValueError as e:
            raise StageDefinitionError(str(e), line=line) from e
        return [w.replace(_ESCAPED_DOLLAR, '\\$') for w in words]

    def _split_pairs(self, text: str, line: int) -> List[str]:
        """
        ENV and LABEL accept ``KEY=VALUE ...`` or the legacy ``KEY VALUE``.
        Both come back as ``KEY=VALUE`` strings.
        """
        words = self._split_words(text, line)
        if words and '=' not in words[0]:
            key, _, value = text.partition(' ')
            return [f"{key}={value.strip()}"]
        for word in words:
            if '=' not in word:
                raise StageDefinitionError(f"Expected KEY=VALUE, got {word!r}", line=line)
        return words

    # -- stage assembly --------------------------------------------------

    def parse_stages(self, dockerfile_path: str,
                     build_args: Optional[Dict[str, str]] = None) -> List[BuildStage]:
        """
        Parses a stage definition file into ordered build stages.

        :param dockerfile_path: Path to the file.
        :param build_args: Values for ARG instructions.
        :return: Stages in declared order.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_stages_from_string(content, build_args)

    def parse_stages_from_string(self, content: str,
                                 build_args: Optional[Dict[str, str]] = None) -> List[BuildStage]:
        """
        Parses stage definition content into ordered build stages.

        :param content: File content.
        :param build_args: Values for ARG instructions.
        :return: Stages in declared order.
        :raises StageDefinitionError: On malformed content or a handoff to a
            stage that is not strictly earlier.
        """
        build_args = dict(build_args or {})
        global_args: Dict[str, str] = {}
        stages: List[BuildStage] = []
        stage: Optional[BuildStage] = None
        stage_args: Dict[str, str] = {}

        for inst in self.parse_from_string(content):
            if stage is None or inst.instruction == "FROM":
                scope = dict(global_args)
            else:
                scope = {**stage_args, **stage.environment}
            args = inst.arguments
            if inst.instruction in _SUBSTITUTED and not inst.exec_form:
                args = [EnvironmentInterpolator.interpolate(a, scope, escape='\\$') for a in args]

            if inst.instruction == "ARG":
                name, value = self._parse_arg(args, inst)
                value = build_args.get(name, value)
                if stage is None:
                    global_args[name] = value or ''
                else:
                    # a global ARG redeclared inside a stage keeps its value
                    stage_args[name] = value if value is not None else global_args.get(name, '')
                    stage.build_args[name] = stage_args[name]
                continue

            if inst.instruction == "FROM":
                stage = self._start_stage(args, inst, stages)
                stages.append(stage)
                stage_args = {}
                continue

            if stage is None:
                raise StageDefinitionError(
                    f"{inst.instruction} before the first FROM", line=inst.line
                )
            self._apply(stage, inst, args, stages)

        validate_stages(stages)
        return stages

    def _parse_arg(self, args: List[str], inst: Instruction):
        if not args:
            raise StageDefinitionError("ARG needs a name", line=inst.line)
        name, sep, value = args[0].partition('=')
        return name.strip(), (value.strip().strip('"\'') if sep else None)

    def _start_stage(self, args: List[str], inst: Instruction,
                     stages: List[BuildStage]) -> BuildStage:
        if len(args) == 1:
            base, name = args[0], str(len(stages))
        elif len(args) == 3 and args[1].upper() == "AS":
            base, name = args[0], args[2]
        else:
            raise StageDefinitionError("FROM expects '<base> [AS <name>]'", line=inst.line)

        stage = BuildStage(name=name, index=len(stages), base_environment=base)

        # FROM <earlier stage> inherits its base, environment and working dir;
        # files only move between stages through COPY --from.
        parent = next((s for s in stages if s.name == base), None)
        if parent is not None:
            stage.base_environment = parent.base_environment
            stage.environment = dict(parent.environment)
            stage.working_dir = parent.working_dir
        return stage

    def _apply(self, stage: BuildStage, inst: Instruction, args: List[str],
               stages: List[BuildStage]) -> None:
        cmd = inst.instruction

        if cmd == "WORKDIR":
            if not args:
                raise StageDefinitionError("WORKDIR needs a path", line=inst.line)
            stage.working_dir = posixpath.normpath(posixpath.join(stage.working_dir, args[0]))
        elif cmd == "ENV":
            for arg in args:
                k, v = arg.split('=', 1)
                stage.environment[k] = v
        elif cmd == "LABEL":
            for arg in args:
                k, v = arg.split('=', 1)
                stage.labels[k] = v
        elif cmd in ("COPY", "ADD"):
            if len(args) < 2:
                raise StageDefinitionError(f"{cmd} needs at least one source and a destination",
                                           line=inst.line)
            stage.input_paths.append(CopyInstruction(
                sources=args[:-1],
                destination=self._resolve(stage, args[-1]),
                from_stage=self._resolve_stage_ref(inst.flags.get('from'), stages),
            ))
        elif cmd == "RUN":
            if not args:
                raise StageDefinitionError("RUN needs a command", line=inst.line)
            stage.commands.append(list(args) if inst.exec_form else SHELL + [args[0]])
        elif cmd == "CMD":
            stage.cmd = list(args) if inst.exec_form else SHELL + args
        elif cmd == "ENTRYPOINT":
            stage.entrypoint = list(args) if inst.exec_form else SHELL + args
        elif cmd == "EXPOSE":
            for arg in args:
                try:
                    stage.exposed_ports.append(int(arg.split('/')[0]))
                except ValueError:
                    raise StageDefinitionError(f"Invalid port {arg!r}", line=inst.line)
        elif cmd == "ARTIFACT":
            if not args:
                raise StageDefinitionError("ARTIFACT needs a path", line=inst.line)
            stage.produced_artifact_path = self._resolve(stage, args[0])
        elif cmd in _IGNORED:
            logger.warning("Line %d: %s is not supported and was ignored", inst.line, cmd)
        else:
            logger.warning("Line %d: unknown instruction %s ignored", inst.line, cmd)

    def _resolve(self, stage: BuildStage, path: str) -> str:
        """Makes a stage path absolute against the working dir, keeping a trailing slash."""
        resolved = posixpath.normpath(posixpath.join(stage.working_dir, path))
        if path.endswith('/') and resolved != '/':
            resolved += '/'
        return resolved

    def _resolve_stage_ref(self, ref: Optional[str], stages: List[BuildStage]) -> Optional[str]:
        """Numeric --from references are stage indexes."""
        if ref is not None and ref.isdigit() and int(ref) < len(stages):
            return stages[int(ref)].name
        return ref
