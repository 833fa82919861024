from matrixci import (
    Executor,
    JobTemplate,
    MatrixAxis,
    Pipeline,
    PipelineEvent,
    PrintHook,
    SqliteData,
    Step,
)

# Builds a pipeline in code instead of YAML: two templates, one with a matrix.
# Run with: python examples/parallel_pipeline.py

data = SqliteData(in_memory=True)

greet = JobTemplate(
    id="greet",
    axes=[MatrixAxis(name="who", values=("alice", "bob"))],
    steps=[
        Step(command="echo hello ${{ matrix.who }}", name="hello"),
        Step(command=("echo", "bye ${{ matrix.who }}"), name="bye"),
    ],
)

check = JobTemplate(
    id="check",
    env={"GREETING": "hi"},
    steps=[Step(command='test -n "$GREETING"', name="env")],
)

PIPELINE = Pipeline([greet, check], data=data, hook=PrintHook())

if __name__ == "__main__":
    report = PIPELINE.execute(PipelineEvent("push"), executor=Executor(max_workers=2))
    report.render()
    raise SystemExit(report.exit_code)
