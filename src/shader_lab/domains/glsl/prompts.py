from __future__ import annotations

from dataclasses import dataclass

FRAGMENT_MARKER = "#-- FRAGMENT SHADER --#"

DEFAULT_FEEDBACK = "Fix compilation errors and improve quality."

_FORMAT_CONTRACT = f"""STRICT OUTPUT FORMAT (follow exactly):
1. A brief rationale (2-3 sentences maximum)
2. The '{FRAGMENT_MARKER}' marker on its own line
3. The complete fragment shader source

EXAMPLE:
I'm using layered sine waves to build the gradient and a soft vignette for depth.

{FRAGMENT_MARKER}
precision mediump float;

void main() {{
  // shader code here
}}"""

_HARNESS_CONTRACT = """CODE REQUIREMENTS:
- The code MUST compile as WebGL GLSL ES 1.0
- A fixed vertex stage provides normalized UV coordinates in a varying named 'vUv'
- Write only the fragment shader, never vertex shader code

Available uniforms:
- uTime (float): time in seconds
- uResolution (vec2): canvas size in pixels
- uMouse (vec2): normalized mouse position (0.0-1.0)
- uMouseClick (vec2): normalized position of the last click
- uIsMouseDown (int): 1 while the mouse button is held
- uFrame (int): frame counter
- uAspect (float): canvas aspect ratio"""

_GENERATE_SYSTEM = f"""You are an expert GLSL programmer specializing in Shadertoy-style fragment shaders. \
Write high-quality, efficient WebGL fragment shaders from natural-language descriptions.

Your response MUST include actual shader code, not just a discussion of techniques.

{_FORMAT_CONTRACT}

{_HARNESS_CONTRACT}"""

_ITERATE_SYSTEM = f"""You are an expert GLSL programmer refining a fragment shader through \
reflection on evaluation feedback: compiler diagnostics, measured metrics and rendered screenshots.

Your response MUST include the complete improved shader code.

{_FORMAT_CONTRACT}

{_HARNESS_CONTRACT}

DEBUGGING APPROACH:
- Read compiler and linker diagnostics carefully and fix every reported line
- Keep the math numerically stable (no division by zero, no NaN-producing ops)
- Make sure every pixel writes gl_FragColor with a non-zero alpha"""

_SPECIALIZED_ADDENDUM = f"""SPECIAL INSTRUCTIONS:
- Use what you learned from training examples as reference for techniques only
- Do not copy code from training examples verbatim
- Your output MUST keep the '{FRAGMENT_MARKER}' separator"""


@dataclass(frozen=True)
class PromptTemplates:
    generate_system: str = _GENERATE_SYSTEM
    iterate_system: str = _ITERATE_SYSTEM
    specialized_addendum: str = _SPECIALIZED_ADDENDUM
    default_feedback: str = DEFAULT_FEEDBACK

    def system_instruction(self, iteration: bool, specialized: bool) -> str:
        system = self.iterate_system if iteration else self.generate_system
        if specialized:
            system += "\n\n" + self.specialized_addendum
        return system

    def initial_user(self, prompt: str) -> str:
        return f"Create a shader that produces: {prompt}"

    def iteration_user(
        self,
        index: int,
        feedback: str | None,
        verdict_summary: str | None,
        diagnostic_log: str | None,
    ) -> str:
        if feedback:
            text = (
                f"Iteration {index}: {feedback}\n\n"
                "Evaluate and improve the shader according to this feedback."
            )
        else:
            text = f"Iteration {index}: {self.default_feedback}"

        if verdict_summary is not None:
            text += f"\n\nEvaluation of the previous shader:\n{verdict_summary}"
        if diagnostic_log:
            text += f"\n\nCompiler output:\n{diagnostic_log}"

        text += (
            "\n\nWrite a brief one-sentence reflection identifying the key issues. "
            "Then provide the complete improved shader code."
        )
        return text
