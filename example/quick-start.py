#%%
# Quick Start with Kiln
# Execute this cell with :KilnRunCell. With no kernel bound to this buffer yet,
# Kiln asks which kernel to use: a local kernel spec, the active interpreter,
# or (after :KilnConnect http://host:8888/?token=...) a remote one.

print("Kiln is working!")
print("This output appears in Neovim")

#%%
# Variables persist between cells of the same kernel
name = "Kiln User"
numbers = [1, 2, 3, 4, 5]

print(f"Hello, {name}!")
print(f"Sum of numbers: {sum(numbers)}")

#%%
# Long running cell: try :KilnInterruptKernel while it runs
import time

for i in range(30):
    print(f"Working... {i + 1}/30")
    time.sleep(1)

#%%
# Errors are echoed as "ename: evalue"
raise ValueError("This is a test error")

#%%
# Kill the kernel process; Kiln reports it as dead and starts a new kernel
# on the next run. :KilnRestartKernel does the same on demand.
import os

os._exit(1)

#%%
# Kernel state after a restart: this raises NameError
print(name)
